"""
Table bookings: tables, booking policies, availability, refunds.
"""
