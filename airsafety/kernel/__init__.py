"""
Kernel - identity, rate limiting and audit primitives behind the login gateway.
"""
