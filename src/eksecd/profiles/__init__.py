"""Agent profile models and loader exports."""

from .loader import AgentProfile, ProfileLoadError, ProfileLoader, load_profiles
from .models import BUILTIN_PROFILES

__all__ = [
    "AgentProfile",
    "BUILTIN_PROFILES",
    "ProfileLoadError",
    "ProfileLoader",
    "load_profiles",
]
