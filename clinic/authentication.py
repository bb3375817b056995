"""
Custom authentication backend for token-based auth.

Subclasses Django REST framework's ``TokenAuthentication`` so that the
settings reference a stable import path.  Keeping it apart from any view
definitions avoids circular imports while DRF initialises.
"""
from __future__ import annotations

from rest_framework import authentication


class TokenAuthentication(authentication.TokenAuthentication):
    """Token authentication using the ``Token`` keyword."""

    keyword = 'Token'
