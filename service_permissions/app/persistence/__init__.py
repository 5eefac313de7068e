"""
Persistence package for Permissions Service.
"""
