"""Factory for wiring a complete socialcast application from SocialcastConfig.

Shared by the CLI and by anything embedding the engine, so store, driver
and guard construction lives in one place.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from socialcast.capabilities import Platform, PlatformCapabilityRegistry
from socialcast.config import PlatformClientConfig, SocialcastConfig
from socialcast.credentials import CredentialManager
from socialcast.dispatcher import Dispatcher
from socialcast.driver import PlatformDriver
from socialcast.linkedin import LinkedInDriver
from socialcast.orchestrator import PostOrchestrator
from socialcast.resilience import PlatformGuard, PostRateTracker
from socialcast.store import CredentialStore, PostStore, TemplateStore, WorkItemStore
from socialcast.twitter import TwitterDriver
from socialcast.work_queue import WorkQueue

# Adding a network means adding its driver module and one entry here.
DRIVER_TYPES: dict[Platform, Callable[..., PlatformDriver]] = {
    Platform.TWITTER: TwitterDriver,
    Platform.LINKEDIN: LinkedInDriver,
}


@dataclass
class Socialcast:
    config: SocialcastConfig
    posts: PostStore
    credentials: CredentialManager
    registry: PlatformCapabilityRegistry
    work_queue: WorkQueue
    orchestrator: PostOrchestrator
    dispatcher: Dispatcher


def build_driver(
    client_config: PlatformClientConfig,
    live: bool = False,
    timeout: float = 30.0,
) -> PlatformDriver:
    try:
        driver_type = DRIVER_TYPES[client_config.platform]
    except KeyError:
        raise ValueError(f"No driver for platform {client_config.platform.value}") from None
    return driver_type(client_config, live=live, timeout=timeout)


def build_drivers(cfg: SocialcastConfig) -> dict[Platform, PlatformDriver]:
    return {
        platform: build_driver(client_config, live=cfg.live_mode, timeout=cfg.http_timeout)
        for platform, client_config in cfg.platforms.items()
    }


def build_app(
    cfg: SocialcastConfig,
    drivers: dict[Platform, PlatformDriver] | None = None,
) -> Socialcast:
    """Build a fully wired application.

    Args:
        cfg: Configuration with platform client credentials and dispatcher
            settings.
        drivers: Optional pre-built drivers. If None, one is constructed
            per configured platform.

    Returns:
        A Socialcast container whose dispatcher publishes through its
        orchestrator.
    """
    if drivers is None:
        drivers = build_drivers(cfg)

    posts = PostStore(cfg.data_path("posts.json"))
    credentials = CredentialManager(CredentialStore(cfg.data_path("credentials.json")), drivers)
    registry = PlatformCapabilityRegistry()
    work_queue = WorkQueue(WorkItemStore(cfg.data_path("work_items.json")))

    orchestrator = PostOrchestrator(
        posts=posts,
        credentials=credentials,
        work_queue=work_queue,
        registry=registry,
        rate_tracker=PostRateTracker(),
        guards={p: PlatformGuard(p, cfg.resilience) for p in drivers},
        templates=TemplateStore(cfg.data_path("templates.json")),
    )
    dispatcher = Dispatcher(
        work_queue,
        orchestrator,
        batch_size=cfg.dispatch_batch_size,
        workers=cfg.dispatch_workers,
        interval=cfg.dispatch_interval,
        stale_after=cfg.stale_after,
        auto_retry_stale=cfg.auto_retry_stale,
    )
    return Socialcast(
        config=cfg,
        posts=posts,
        credentials=credentials,
        registry=registry,
        work_queue=work_queue,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
    )
