from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

MAX_CONCURRENT_LIMIT = 5

DEFAULT_SUCCESS_KEYWORDS = (
    "thanks",
    "thank-you",
    "thankyou",
    "complete",
    "success",
    "sent",
    "done",
    "完了",
)

DEFAULT_NAVIGATION_SIGNATURES = (
    "execution context was destroyed",
    "frame was detached",
    "back/forward cache",
    "message channel closed",
    "receiving end does not exist",
)

DEFAULT_FALLBACK_PATHS = (
    "/contact/other/",
    "/contact/others/",
    "/contact/form.php?type=other",
    "/inquiry/other/",
    "/inquiry/others/",
    "/contact-other/",
    "/contact-others/",
    "/inquiry-other/",
    "/contact_other/",
    "/inquiry_other/",
    "/contact",
    "/contact/",
    "/contact/index.html",
    "/contact/form.html",
    "/inquiry",
    "/inquiry/",
    "/inquiry/index.html",
    "/inquiry/form.html",
    "/toiawase/",
    "/otoiawase/",
    "/お問い合わせ/",
    "/form/",
    "/form/contact/",
    "/form/inquiry/",
    "/contact-us/",
    "/contactus/",
)


@dataclass(slots=True)
class PathsConfig:
    db: Path
    log: Path


@dataclass(slots=True)
class SchedulerConfig:
    max_concurrent: int = 3
    tick_seconds: float = 6.0
    launch_stagger_seconds: float = 0.5
    refill_delay_seconds: float = 1.0
    lease_seconds: float = 600.0


@dataclass(slots=True)
class TabConfig:
    load_timeout_seconds: float = 60.0
    settle_seconds: float = 2.0
    poll_interval_seconds: float = 0.25


@dataclass(slots=True)
class AgentConfig:
    script_path: Path | None = None
    global_name: str = "__formpilotAgent"
    ping_attempts: int = 3
    ping_interval_seconds: float = 0.5
    ping_timeout_seconds: float = 5.0
    dispatch_retries: int = 3
    retry_delay_seconds: float = 1.0
    dispatch_timeout_seconds: float = 30.0
    success_keywords: tuple[str, ...] = DEFAULT_SUCCESS_KEYWORDS
    navigation_signatures: tuple[str, ...] = DEFAULT_NAVIGATION_SIGNATURES


@dataclass(slots=True)
class DiscoveryConfig:
    fallback_paths: tuple[str, ...] = DEFAULT_FALLBACK_PATHS
    same_origin_only: bool = True


@dataclass(slots=True)
class PipelineConfig:
    submit_timeout_seconds: float = 120.0


@dataclass(slots=True)
class BrowserConfig:
    headless: bool = True
    navigation_timeout_seconds: float = 30.0
    status_timeout_seconds: float = 5.0
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0 Safari/537.36"
    )


@dataclass(slots=True)
class ReporterConfig:
    base_url: str | None = None
    endpoint: str = "/api/leads/update-send-result"
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    tabs: TabConfig = field(default_factory=TabConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    reporter: ReporterConfig = field(default_factory=ReporterConfig)


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _section(raw: dict, key: str) -> dict:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"`{key}` must be a mapping")
    return value


def _string_list(section: dict, key: str, section_name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ValueError(f"`{section_name}.{key}` must be a list of strings")
    return tuple(value)


def _non_negative(value: float, name: str) -> None:
    if value < 0:
        raise ValueError(f"`{name}` must be >= 0")


def validate_max_concurrent(value: int) -> int:
    if not 1 <= value <= MAX_CONCURRENT_LIMIT:
        raise ValueError(f"max_concurrent must be between 1 and {MAX_CONCURRENT_LIMIT}, got {value}")
    return value


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    scheduler_raw = _section(raw, "scheduler")
    tabs_raw = _section(raw, "tabs")
    agent_raw = _section(raw, "agent")
    discovery_raw = _section(raw, "discovery")
    pipeline_raw = _section(raw, "pipeline")
    browser_raw = _section(raw, "browser")
    reporter_raw = _section(raw, "reporter")

    def to_path(value: object) -> Path:
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    paths = PathsConfig(
        db=to_path(_require(paths_raw, "db", "paths")),
        log=to_path(_require(paths_raw, "log", "paths")),
    )

    scheduler = SchedulerConfig(
        max_concurrent=int(scheduler_raw.get("max_concurrent", 3)),
        tick_seconds=float(scheduler_raw.get("tick_seconds", 6.0)),
        launch_stagger_seconds=float(scheduler_raw.get("launch_stagger_seconds", 0.5)),
        refill_delay_seconds=float(scheduler_raw.get("refill_delay_seconds", 1.0)),
        lease_seconds=float(scheduler_raw.get("lease_seconds", 600.0)),
    )
    validate_max_concurrent(scheduler.max_concurrent)
    if scheduler.tick_seconds <= 0:
        raise ValueError("`scheduler.tick_seconds` must be > 0")
    if scheduler.lease_seconds <= 0:
        raise ValueError("`scheduler.lease_seconds` must be > 0")
    _non_negative(scheduler.launch_stagger_seconds, "scheduler.launch_stagger_seconds")
    _non_negative(scheduler.refill_delay_seconds, "scheduler.refill_delay_seconds")

    tabs = TabConfig(
        load_timeout_seconds=float(tabs_raw.get("load_timeout_seconds", 60.0)),
        settle_seconds=float(tabs_raw.get("settle_seconds", 2.0)),
        poll_interval_seconds=float(tabs_raw.get("poll_interval_seconds", 0.25)),
    )
    if tabs.load_timeout_seconds <= 0:
        raise ValueError("`tabs.load_timeout_seconds` must be > 0")
    _non_negative(tabs.settle_seconds, "tabs.settle_seconds")
    _non_negative(tabs.poll_interval_seconds, "tabs.poll_interval_seconds")

    script_raw = agent_raw.get("script_path")
    agent = AgentConfig(
        script_path=to_path(script_raw) if script_raw else None,
        global_name=str(agent_raw.get("global_name", "__formpilotAgent")),
        ping_attempts=int(agent_raw.get("ping_attempts", 3)),
        ping_interval_seconds=float(agent_raw.get("ping_interval_seconds", 0.5)),
        ping_timeout_seconds=float(agent_raw.get("ping_timeout_seconds", 5.0)),
        dispatch_retries=int(agent_raw.get("dispatch_retries", 3)),
        retry_delay_seconds=float(agent_raw.get("retry_delay_seconds", 1.0)),
        dispatch_timeout_seconds=float(agent_raw.get("dispatch_timeout_seconds", 30.0)),
        success_keywords=_string_list(agent_raw, "success_keywords", "agent", DEFAULT_SUCCESS_KEYWORDS),
        navigation_signatures=_string_list(
            agent_raw, "navigation_signatures", "agent", DEFAULT_NAVIGATION_SIGNATURES
        ),
    )
    if agent.ping_attempts < 1:
        raise ValueError("`agent.ping_attempts` must be >= 1")
    if agent.dispatch_retries < 1:
        raise ValueError("`agent.dispatch_retries` must be >= 1")
    if agent.dispatch_timeout_seconds <= 0:
        raise ValueError("`agent.dispatch_timeout_seconds` must be > 0")

    discovery = DiscoveryConfig(
        fallback_paths=_string_list(discovery_raw, "fallback_paths", "discovery", DEFAULT_FALLBACK_PATHS),
        same_origin_only=bool(discovery_raw.get("same_origin_only", True)),
    )

    pipeline = PipelineConfig(
        submit_timeout_seconds=float(pipeline_raw.get("submit_timeout_seconds", 120.0)),
    )
    if pipeline.submit_timeout_seconds <= 0:
        raise ValueError("`pipeline.submit_timeout_seconds` must be > 0")

    browser = BrowserConfig(
        headless=bool(browser_raw.get("headless", True)),
        navigation_timeout_seconds=float(browser_raw.get("navigation_timeout_seconds", 30.0)),
        status_timeout_seconds=float(browser_raw.get("status_timeout_seconds", 5.0)),
    )
    if "user_agent" in browser_raw:
        browser.user_agent = str(browser_raw["user_agent"])

    base_url = reporter_raw.get("base_url")
    reporter = ReporterConfig(
        base_url=str(base_url).rstrip("/") if base_url else None,
        endpoint=str(reporter_raw.get("endpoint", "/api/leads/update-send-result")),
        timeout_seconds=float(reporter_raw.get("timeout_seconds", 10.0)),
    )

    return AppConfig(
        paths=paths,
        scheduler=scheduler,
        tabs=tabs,
        agent=agent,
        discovery=discovery,
        pipeline=pipeline,
        browser=browser,
        reporter=reporter,
    )


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
