"""
TRUSTGATE - Two-Factor Authentication and Device Trust Service

This package provides the login pipeline of the dashboard application:
password login behind a login throttle, TOTP enrollment and verification,
and trusted-device tokens that let a browser skip the second factor.
"""

__version__ = "0.1.0"
__author__ = "TRUSTGATE Team"
