"""
Customer records shared by bookings, loyalty and messaging.
"""
