"""Shared infrastructure: error taxonomy and secure logging."""
