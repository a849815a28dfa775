"""CLI entry point for the mod portal monitor."""

import asyncio
import logging
import signal
from pathlib import Path
from typing import Awaitable, Callable, Optional, TypeVar

import typer

from modportal_monitor.adapters.notifications import DiscordNotifier
from modportal_monitor.adapters.sources import ModPortalSource
from modportal_monitor.config import Settings, get_settings
from modportal_monitor.core import (
    CatalogCache,
    CommandError,
    JsonStateStore,
    LookupFailed,
    ModPortalMonitorError,
    StateCorruptedError,
    SubscriptionStore,
    WatermarkStore,
    build_snapshot,
)
from modportal_monitor.use_cases import LookupService, SubscriptionService, UpdateService

logger = logging.getLogger("modportal_monitor")

T = TypeVar("T")

app = typer.Typer(
    add_completion=False,
    help="Watch the mod portal and post update messages to subscribed channels.",
)

CONFIG_OPTION = typer.Option(None, "--config", help="Path to config.yaml")
DEBUG_OPTION = typer.Option(False, "--debug", help="Enable debug logging")


def setup(config: Optional[Path], debug: bool) -> Settings:
    """Load settings and configure logging."""
    settings = get_settings(config)
    logging.basicConfig(
        level=logging.DEBUG if debug else settings.logging.level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return settings


def execute(work: Awaitable[T]) -> T:
    """Run a command coroutine and turn failures into a non-zero exit."""
    try:
        return asyncio.run(work)
    except CommandError as e:
        print(f"❌ {e.title}: {e.description}")
        raise typer.Exit(code=1)
    except LookupFailed as e:
        logger.error("Lookup failed: %s", e.cause)
        print(f"❌ {e.user_message}")
        raise typer.Exit(code=1)
    except StateCorruptedError as e:
        logger.error("Persisted state is unreadable, refusing to continue: %s", e)
        raise typer.Exit(code=1)
    except ModPortalMonitorError as e:
        print(f"❌ {e}")
        raise typer.Exit(code=1)


def build_state_store(settings: Settings) -> JsonStateStore:
    return JsonStateStore(
        settings.state_dir,
        max_attempts=settings.state.read_attempts,
        initial_delay=settings.state.read_retry_delay,
    )


def build_notifier(settings: Settings, source: ModPortalSource) -> DiscordNotifier:
    return DiscordNotifier(
        settings.discord_token,
        settings.discord,
        author_base_url=f"{source.base_url}/user",
    )


def build_update_service(settings: Settings) -> UpdateService:
    """Wire adapters and stores from settings."""
    source = ModPortalSource(settings.portal)
    store = build_state_store(settings)
    return UpdateService(
        source=source,
        notifier=build_notifier(settings, source),
        cache=CatalogCache(),
        subscriptions=SubscriptionStore(store),
        watermarks=WatermarkStore(store),
        known_versions=settings.known_versions,
        default_version=settings.default_version,
        poll_interval=settings.poll_interval,
        max_deferral=settings.polling.max_deferral,
    )


async def load_catalog(settings: Settings, source: ModPortalSource) -> CatalogCache:
    """Fetch the catalog once for commands that validate names."""
    items = await source.fetch_catalog()
    return CatalogCache(build_snapshot(items, settings.known_versions, settings.default_version))


async def with_subscriptions(
    settings: Settings,
    destination: str,
    action: Callable[[SubscriptionService], Awaitable[str]],
    needs_catalog: bool = False,
) -> str:
    """Run one subscription command, creating the destination on first contact."""
    source = ModPortalSource(settings.portal)
    cache = await load_catalog(settings, source) if needs_catalog else CatalogCache()
    store = SubscriptionStore(build_state_store(settings))
    await store.ensure(destination)
    service = SubscriptionService(store, cache, build_notifier(settings, source))
    return await action(service)


def subscription_command(
    settings: Settings,
    destination: str,
    action: Callable[[SubscriptionService], Awaitable[str]],
    needs_catalog: bool = False,
) -> None:
    message = execute(with_subscriptions(settings, destination, action, needs_catalog))
    print(f"✅ {message}")


async def with_lookups(settings: Settings, action: Callable[[LookupService], Awaitable[T]]) -> T:
    source = ModPortalSource(settings.portal)
    cache = await load_catalog(settings, source)
    return await action(LookupService(source, cache))


@app.command()
def run(
    once: bool = typer.Option(False, "--once", help="Run a single poll cycle and exit"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Watch the mod portal and post update messages to subscribed channels."""
    settings = setup(config, debug)
    execute(async_run(settings, once))


@app.command()
def track(
    destination: str = typer.Argument(..., help="Destination (server) id"),
    mod: Optional[str] = typer.Option(None, "--mod", help="Track one mod"),
    author: Optional[str] = typer.Option(None, "--author", help="Track an author and all their mods"),
    mod_list: Optional[Path] = typer.Option(None, "--mod-list", help="Track enabled mods from a mod-list.json"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Add a mod, an author or a whole mod list to the tracked sets."""
    settings = setup(config, debug)
    if mod:
        subscription_command(settings, destination, lambda s: s.track_item(destination, mod), needs_catalog=True)
    elif author:
        subscription_command(settings, destination, lambda s: s.track_author(destination, author), needs_catalog=True)
    elif mod_list:
        payload = mod_list.read_bytes()
        subscription_command(settings, destination, lambda s: s.track_mod_list(destination, payload))
    else:
        raise typer.BadParameter("Pass one of --mod, --author or --mod-list")


@app.command()
def untrack(
    destination: str = typer.Argument(..., help="Destination (server) id"),
    mod: Optional[str] = typer.Option(None, "--mod", help="Stop tracking one mod"),
    author: Optional[str] = typer.Option(None, "--author", help="Stop tracking an author and their mods"),
    all_: bool = typer.Option(False, "--all", help="Clear every tracked mod and author"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Remove a mod or an author from the tracked sets."""
    settings = setup(config, debug)
    if all_:
        subscription_command(settings, destination, lambda s: s.untrack_all(destination))
    elif mod:
        subscription_command(settings, destination, lambda s: s.untrack_item(destination, mod), needs_catalog=True)
    elif author:
        subscription_command(settings, destination, lambda s: s.untrack_author(destination, author), needs_catalog=True)
    else:
        raise typer.BadParameter("Pass one of --mod, --author or --all")


@app.command("track-all")
def track_all(
    destination: str = typer.Argument(..., help="Destination (server) id"),
    off: bool = typer.Option(False, "--off", help="Go back to the tracked sets"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Receive updates for every mod."""
    settings = setup(config, debug)
    subscription_command(settings, destination, lambda s: s.set_track_all(destination, not off))


@app.command()
def changelogs(
    destination: str = typer.Argument(..., help="Destination (server) id"),
    off: bool = typer.Option(False, "--off", help="Hide changelogs"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Show changelogs in update messages."""
    settings = setup(config, debug)
    subscription_command(settings, destination, lambda s: s.set_changelogs(destination, not off))


@app.command()
def enable(
    destination: str = typer.Argument(..., help="Destination (server) id"),
    off: bool = typer.Option(False, "--off", help="Stop sending update messages"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Turn update messages on for a destination."""
    settings = setup(config, debug)
    subscription_command(settings, destination, lambda s: s.set_enabled(destination, not off))


@app.command("set-channel")
def set_channel(
    destination: str = typer.Argument(..., help="Destination (server) id"),
    channel: str = typer.Argument(..., help="Channel id for update messages"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Choose the channel update messages are posted to."""
    settings = setup(config, debug)
    subscription_command(settings, destination, lambda s: s.set_channel(destination, channel))


@app.command("list")
def list_tracked(
    destination: str = typer.Argument(..., help="Destination (server) id"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Show tracked mods and authors."""
    settings = setup(config, debug)

    async def collect(service: SubscriptionService) -> str:
        items, authors = await service.list_tracked(destination)
        lines = ["📦 Mods:"] + [f"  • {name}" for name in items]
        lines += ["👤 Authors:"] + [f"  • {name}" for name in authors]
        return "\n".join(lines)

    print(execute(with_subscriptions(settings, destination, collect)))


@app.command("test")
def send_test(
    destination: str = typer.Argument(..., help="Destination (server) id"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Send a test message to the update channel."""
    settings = setup(config, debug)
    subscription_command(settings, destination, lambda s: s.send_test(destination))


@app.command()
def mod(
    name: str = typer.Argument(..., help="Mod name"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Show one mod."""
    settings = setup(config, debug)
    detail = execute(with_lookups(settings, lambda lookups: lookups.mod(name)))

    print(f"\n📦 {detail.title} ({detail.name})")
    print(f"  • Author: {detail.owner}")
    if detail.latest_release is not None:
        print(f"  • Version: {detail.latest_release.version}")
    print(f"  • Downloads: {detail.downloads_count}")
    print(f"  • {detail.url}")
    if detail.summary:
        print(f"\n{detail.summary}")


@app.command()
def author(
    name: str = typer.Argument(..., help="Author name"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Show an author and their rank by downloads."""
    settings = setup(config, debug)

    async def lookup(lookups: LookupService):
        return lookups.author(name)

    found, rank = execute(with_lookups(settings, lookup))
    print(f"\n👤 {found.name} (#{rank})")
    print(f"  • Mods: {len(found.items)}")
    print(f"  • Downloads: {found.downloads}")


@app.command()
def changelog(
    name: str = typer.Argument(..., help="Mod name"),
    version: Optional[str] = typer.Option(None, "--version", help="Release version, latest by default"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """Show the changelog of one release."""
    settings = setup(config, debug)
    detail, release, text = execute(with_lookups(settings, lambda lookups: lookups.changelog(name, version)))
    print(f"\n📝 {detail.title} {release.version}\n")
    print(text)


@app.command()
def dependents(
    name: str = typer.Argument(..., help="Mod name"),
    config: Optional[Path] = CONFIG_OPTION,
    debug: bool = DEBUG_OPTION,
) -> None:
    """List mods that depend on a mod."""
    settings = setup(config, debug)

    async def lookup(lookups: LookupService):
        return lookups.dependents(name)

    for item in execute(with_lookups(settings, lookup)):
        print(f"  • {item.title} ({item.name})")


async def async_run(settings: Settings, once: bool) -> None:
    """Async implementation of the run command."""
    print("\n" + "=" * 70)
    print("🏭  MODPORTAL MONITOR - Mod update notifications")
    print("=" * 70)

    if settings.discord_token:
        print("  ✓ DISCORD_TOKEN - for sending update messages")
    else:
        print("  ⚠️  DISCORD_TOKEN - not found (update messages will fail)")
    print(f"  • Portal: {settings.portal.base_url}")
    print(f"  • State: {settings.state_dir}")
    print(f"  • Interval: {settings.poll_interval:.0f}s")
    print(f"  • Default version: {settings.default_version}")

    service = build_update_service(settings)

    if once:
        report = await service.run_cycle()
        if report is None:
            print("\n❌ Catalog could not be fetched")
        else:
            print(f"\n✅ {report.events} releases, {report.sent} messages sent, {report.send_failures} failed")
        return

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    logger.info("Initializing updates")
    await service.run_forever(stop)
    logger.info("Shutting down...")


if __name__ == "__main__":
    app()
