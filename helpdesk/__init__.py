"""Ticket lifecycle controller for the customer support portal."""
