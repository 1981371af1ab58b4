"""
Private event bookings: holds, deposits, line items, documents.
"""
