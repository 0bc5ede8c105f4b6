"""
Booking and availability engine for appointment-based service providers.
"""

__version__ = "0.1.0"
