"""
Air Safety Report System - authentication gateway.
"""
