"""Exposure refinement engine.

Progressively refines proximity-exposure estimates from successive, increasingly
precise scanning passes over a contact's keys.
"""

__version__ = "0.1.0"
