"""
Webhook платежного шлюза (FastAPI)
"""
from .webhook import create_app, verify_signature

__all__ = ['create_app', 'verify_signature']
