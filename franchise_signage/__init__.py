"""
Franchise digital-signage backend: document store, playlist resolution and
phone OTP device pairing.
"""

__version__ = '2.0.0'
