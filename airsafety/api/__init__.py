"""
HTTP surface of the login gateway.
"""
