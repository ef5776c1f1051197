__all__ = [
    "Actor",
    "create_access_token",
    "decode_access_token",
    "get_current_actor",
    "require_admin",
    "oauth2_scheme",
]


def __getattr__(name):
    if name in set(__all__):
        from . import security as _security
        return getattr(_security, name)
    raise AttributeError(f"module 'timebank.utils' has no attribute '{name}'")
