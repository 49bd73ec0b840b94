"""
API routers for the Wound Measurement API.
"""
