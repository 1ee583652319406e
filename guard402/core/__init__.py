"""
Core modules for guard402.

This package contains policy enforcement, payment quote handling,
pricing, analytics and invoicing.
"""
