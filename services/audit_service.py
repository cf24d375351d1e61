"""
Audit Service - Request context for the document activity trail.

Routes call these helpers to learn who is acting and from where, then pass
that identity into the lifecycle manager, which writes the activity rows.
"""

from flask import request
from flask_login import current_user


def get_request_context():
    """
    Extract IP address and user agent from the current request.
    Returns (ip_address, user_agent) tuple.
    """
    ip_address = None
    user_agent = None

    try:
        if request:
            # Get IP, handling proxies
            ip_address = request.headers.get('X-Forwarded-For', request.remote_addr)
            if ip_address and ',' in ip_address:
                ip_address = ip_address.split(',')[0].strip()
            if ip_address:
                ip_address = ip_address[:45]

            user_agent = request.headers.get('User-Agent', '')[:500]  # Truncate if too long
    except RuntimeError:
        # Outside of request context
        pass

    return ip_address, user_agent


def get_current_actor():
    """(user_id, user_name) of the authenticated caller, or (None, None)."""
    try:
        if current_user and current_user.is_authenticated:
            return current_user.id, getattr(current_user, 'name', None)
    except RuntimeError:
        pass
    return None, None


def actor_kwargs():
    """Keyword arguments identifying the caller for lifecycle manager calls."""
    user_id, user_name = get_current_actor()
    ip_address, _ = get_request_context()
    return {'user_id': user_id, 'user_name': user_name, 'ip_address': ip_address}
