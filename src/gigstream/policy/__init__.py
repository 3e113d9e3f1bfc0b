"""Policy — marketplace parameters loaded from config/."""

from gigstream.policy.resolver import PolicyResolver

__all__ = ["PolicyResolver"]
