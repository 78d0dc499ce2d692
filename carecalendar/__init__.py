"""
carecalendar - provider availability rules and concurrency-safe slot booking.
"""

__version__ = "0.1.0"
