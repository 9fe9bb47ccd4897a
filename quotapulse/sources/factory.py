from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable

from quotapulse.budget.digestor import LogDigestor
from quotapulse.budget.expense import ExpenseAnalyzer
from quotapulse.config import Settings
from quotapulse.models import utcnow
from quotapulse.observability.logger import get_logger
from quotapulse.providers.base import UsageFetcher
from quotapulse.providers.claude import ClaudeOAuthFetcher
from quotapulse.providers.cli import CliProbe
from quotapulse.providers.codex import CodexOAuthFetcher
from quotapulse.providers.copilot import CopilotUsageFetcher
from quotapulse.providers.multicc import MulticcDiscovery, MulticcProfile
from quotapulse.sources import catalog
from quotapulse.sources.api import ApiUsageSource
from quotapulse.sources.base import CredentialLookup, SignalSource
from quotapulse.sources.cli import CliProbeSource
from quotapulse.sources.logs import LogUsageSource
from quotapulse.usage.layouts import ClaudeLogLayout, CodexLogLayout, LogLayout
from quotapulse.usage.scanner import UsageLogScanner

log = get_logger("factory")


@dataclass
class SourceBundle:
    """Everything the factory built, so the host can close HTTP clients on shutdown."""

    expense: ExpenseAnalyzer
    sources: list[SignalSource] = field(default_factory=list)
    fetchers: list[UsageFetcher] = field(default_factory=list)

    async def aclose(self):
        for fetcher in self.fetchers:
            await fetcher.aclose()


def _no_credentials(provider_id: str) -> str | None:
    return None


def build_layouts(settings: Settings) -> dict[str, LogLayout]:
    return {
        "claude": ClaudeLogLayout(config_dirs=settings.claude_config_dirs),
        "codex": CodexLogLayout(codex_home=settings.codex_home_dir),
    }


def _claude_credential_dirs(settings: Settings) -> list[Path]:
    return settings.claude_config_dirs or [Path.home() / ".claude", Path.home() / ".config" / "claude"]


def discover_claude_profiles(settings: Settings) -> list[MulticcProfile]:
    """multicc profiles to track instead of the default Claude install; empty means use the default."""
    if not settings.multicc_enabled:
        return []
    discovery = MulticcDiscovery(settings.multicc_home)
    if not discovery.profiles:
        return []
    selected = discovery.select(settings.multicc_profile)
    if not selected:
        log.warning("multicc_profile_not_found", profile=settings.multicc_profile)
    return selected


def build_sources(
    settings: Settings,
    credentials: CredentialLookup | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SourceBundle:
    """Register one source per (enabled provider, acquisition method)."""
    credentials = credentials or _no_credentials
    enabled = settings.enabled_providers
    layouts = build_layouts(settings)
    claude_profiles = discover_claude_profiles(settings) if "claude" in enabled else []

    digestors = {pid: LogDigestor(layout) for pid, layout in layouts.items() if pid in enabled}
    if claude_profiles:
        digestors.pop("claude", None)
        for profile in claude_profiles:
            provider_id = catalog.claude_profile(profile.name).provider_id
            layouts[provider_id] = ClaudeLogLayout(config_dirs=[profile.config_dir])
            digestors[provider_id] = LogDigestor(layouts[provider_id])

    expense = ExpenseAnalyzer(
        digestors=digestors,
        window_days=settings.cost_window_days,
        cache_seconds=settings.digest_cache_seconds,
        clock=clock,
    )

    sources: list[SignalSource] = []
    fetchers: list[UsageFetcher] = []

    if claude_profiles:
        for profile in claude_profiles:
            provider = catalog.claude_profile(profile.name)
            fetcher = ClaudeOAuthFetcher(
                config_dirs=[profile.config_dir],
                credentials=credentials,
                timeout=settings.http_timeout_seconds,
                clock=clock,
                credential_key=provider.provider_id,
            )
            fetchers.append(fetcher)
            scanner = UsageLogScanner(layouts[provider.provider_id], clock=clock)
            sources.append(ApiUsageSource(provider, fetcher, expense, clock))
            sources.append(LogUsageSource(provider, scanner, expense, clock))
    elif "claude" in enabled:
        fetcher = ClaudeOAuthFetcher(
            config_dirs=_claude_credential_dirs(settings),
            credentials=credentials,
            timeout=settings.http_timeout_seconds,
            clock=clock,
        )
        fetchers.append(fetcher)
        sources.append(ApiUsageSource(catalog.CLAUDE, fetcher, expense, clock))
        sources.append(LogUsageSource(catalog.CLAUDE, UsageLogScanner(layouts["claude"], clock=clock), expense, clock))
        if settings.cli_probe_enabled:
            probe = CliProbe(settings.claude_cli_command, ["/usage"], settings.cli_probe_timeout_seconds)
            sources.append(CliProbeSource(catalog.CLAUDE, probe, expense, clock))

    if "codex" in enabled:
        fetcher = CodexOAuthFetcher(
            codex_home=settings.codex_home_dir,
            credentials=credentials,
            timeout=settings.http_timeout_seconds,
            clock=clock,
        )
        fetchers.append(fetcher)
        sources.append(ApiUsageSource(catalog.CODEX, fetcher, expense, clock))
        sources.append(LogUsageSource(catalog.CODEX, UsageLogScanner(layouts["codex"], clock=clock), expense, clock))
        if settings.cli_probe_enabled:
            probe = CliProbe(settings.codex_cli_command, ["/status"], settings.cli_probe_timeout_seconds)
            sources.append(CliProbeSource(catalog.CODEX, probe, expense, clock))

    if "copilot" in enabled:
        fetcher = CopilotUsageFetcher(credentials=credentials, timeout=settings.http_timeout_seconds, clock=clock)
        fetchers.append(fetcher)
        sources.append(ApiUsageSource(catalog.COPILOT, fetcher, None, clock))

    log.info(
        "sources_built",
        providers=sorted(enabled),
        claude_profiles=[p.name for p in claude_profiles],
        sources=len(sources),
    )
    return SourceBundle(sources=sources, fetchers=fetchers, expense=expense)
