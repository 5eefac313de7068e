"""
Role-change event handling for the Permissions Service.
"""
