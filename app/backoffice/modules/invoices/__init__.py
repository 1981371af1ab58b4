"""
Invoices, quotes, recurring invoices, vendors and the line item catalog.
"""
