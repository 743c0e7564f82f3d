"""
Knowledge-base event fan-out.

Turns domain mutations into real-time channel broadcasts and asynchronous
notification emails, re-checking access control at the moment of delivery.
"""

__version__ = "0.1.0"
