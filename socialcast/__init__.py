"""socialcast: author once, publish on schedule to several social networks.

Post lifecycle orchestration, OAuth credential upkeep, per-platform
content rules and a time-triggered dispatcher with per-platform
success tracking.
"""

__version__ = "0.1.0"

from socialcast.capabilities import Platform, PlatformCapabilityRegistry
from socialcast.config import load_config, SocialcastConfig
from socialcast.credentials import CredentialManager
from socialcast.dispatcher import Dispatcher
from socialcast.factory import build_app, Socialcast
from socialcast.models import CreatePostRequest, Post, PostStatus, UpdatePostRequest
from socialcast.orchestrator import PostOrchestrator, PublishOutcome

__all__ = [
    "Platform",
    "PlatformCapabilityRegistry",
    "load_config",
    "SocialcastConfig",
    "CredentialManager",
    "Dispatcher",
    "build_app",
    "Socialcast",
    "CreatePostRequest",
    "Post",
    "PostStatus",
    "UpdatePostRequest",
    "PostOrchestrator",
    "PublishOutcome",
]
