from __future__ import annotations

import asyncio
import datetime as dt
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, TypedDict

from langgraph.graph import END, StateGraph

from ..core.alerts import AlertDispatcher, AlertManager, AlertSink, EmailConfig, SlackConfig, TelegramConfig
from ..core.classifier import ThreatTier, TierThresholds
from ..core.errors import QueryError
from ..core.executor import build_executor
from ..core.mitigation import DEFAULT_PROTECTED, MitigationConfig, MitigationStore
from ..core.traffic_source import InfluxConfig, InfluxTrafficSource, MockTrafficSource, TrafficAggregateSource
from ..utils.config import AppConfig, load_config
from ..utils.logger import setup_logging
from .analysis_agent import AddressAnalysis, AnalysisAgent, Finding
from .monitoring_agent import MonitoringAgent
from .response_agent import ResponseAgent


logger = logging.getLogger(__name__)


class ScanState(TypedDict, total=False):
    samples: List[Any]
    findings: List[Finding]
    actions: List[Dict[str, Any]]
    error: Optional[str]
    summary: Dict[str, Any]


def build_detection_graph(
    monitoring: MonitoringAgent,
    analysis: AnalysisAgent,
    response: ResponseAgent,
    window: dt.timedelta,
):
    graph = StateGraph(ScanState)

    async def query_traffic(state: ScanState) -> ScanState:
        try:
            samples = await monitoring.scan(window)
        except QueryError as e:
            # abort this tick only; the store is untouched
            logger.warning("traffic_query_failed", extra={"err": str(e)})
            return {**state, "samples": [], "error": str(e)}
        return {**state, "samples": samples, "error": None}

    async def classify_traffic(state: ScanState) -> ScanState:
        findings = analysis.classify_samples(state.get("samples", []) or [])
        return {**state, "findings": findings}

    async def respond(state: ScanState) -> ScanState:
        actions = await response.respond(state.get("findings", []) or [])
        return {**state, "actions": actions}

    async def generate_report(state: ScanState) -> ScanState:
        findings = state.get("findings", []) or []
        by_tier: Dict[str, int] = {}
        for f in findings:
            if f.tier > ThreatTier.NORMAL:
                by_tier[f.tier.name] = by_tier.get(f.tier.name, 0) + 1
        return {**state, "summary": {"by_tier": by_tier}}

    graph.add_node("query_traffic", query_traffic)
    graph.add_node("classify_traffic", classify_traffic)
    graph.add_node("respond", respond)
    graph.add_node("generate_report", generate_report)

    graph.set_entry_point("query_traffic")

    def _route_after_query(state: ScanState) -> str:
        return "abort" if state.get("error") else "classify"

    def _route_after_classify(state: ScanState) -> str:
        findings = state.get("findings", []) or []
        return "respond" if any(f.tier > ThreatTier.NORMAL for f in findings) else "report"

    graph.add_conditional_edges(
        "query_traffic",
        _route_after_query,
        {"classify": "classify_traffic", "abort": "generate_report"},
    )
    graph.add_conditional_edges(
        "classify_traffic",
        _route_after_classify,
        {"respond": "respond", "report": "generate_report"},
    )
    graph.add_edge("respond", "generate_report")
    graph.add_edge("generate_report", END)

    return graph.compile()


@dataclass
class DetectionConfig:
    enabled: bool = True
    interval_s: float = 30.0
    scan_window_s: int = 60
    analysis_window_s: int = 300
    query_timeout_s: float = 10.0
    thresholds: TierThresholds = TierThresholds()

    @property
    def scan_window(self) -> dt.timedelta:
        return dt.timedelta(seconds=self.scan_window_s)

    @property
    def analysis_window(self) -> dt.timedelta:
        return dt.timedelta(seconds=self.analysis_window_s)


@dataclass
class ScanReport:
    started_at: dt.datetime
    finished_at: Optional[dt.datetime] = None
    skipped: bool = False
    samples: int = 0
    findings: List[Finding] = field(default_factory=list)
    actions: List[Dict[str, Any]] = field(default_factory=list)
    by_tier: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def threats(self) -> List[Finding]:
        return [f for f in self.findings if f.tier > ThreatTier.NORMAL]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "skipped": self.skipped,
            "samples": self.samples,
            "threats": [f.to_dict() for f in self.threats],
            "actions": self.actions,
            "by_tier": self.by_tier,
            "error": self.error,
        }


class DetectionLoop:
    """
    Fixed-rate scheduler for the scan graph.

    At most one scan runs at a time. A tick that fires while a scan is still
    in flight is skipped, and so is a manual trigger; nothing is queued.
    Scans run as their own tasks so a slow scan never delays the next tick.
    """

    def __init__(
        self,
        cfg: DetectionConfig,
        monitoring: MonitoringAgent,
        analysis: AnalysisAgent,
        response: ResponseAgent,
        store: MitigationStore,
        auto_unblock_after: Optional[dt.timedelta] = None,
    ):
        self.cfg = cfg
        self.store = store
        self.auto_unblock_after = auto_unblock_after
        self.graph = build_detection_graph(monitoring, analysis, response, cfg.scan_window)
        self.last_report: Optional[ScanReport] = None
        self.scans_completed = 0
        self.ticks_skipped = 0
        self._scanning = False
        self._current: Optional[asyncio.Task] = None
        self._stop: Optional[asyncio.Event] = None
        self._runner: Optional[asyncio.Task] = None

    @property
    def scanning(self) -> bool:
        return self._scanning

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def scan_once(self) -> ScanReport:
        started = dt.datetime.now(dt.UTC)
        if self._scanning:
            logger.info("scan_skipped_in_progress")
            return ScanReport(started_at=started, finished_at=started, skipped=True)

        self._scanning = True
        report = ScanReport(started_at=started)
        logger.debug("scan_started", extra={"window_s": self.cfg.scan_window_s})
        try:
            if self.auto_unblock_after is not None:
                await self.store.release_expired(self.auto_unblock_after)
            state: ScanState = {"samples": [], "findings": [], "actions": [], "error": None}
            out = await self.graph.ainvoke(state)
            report.samples = len(out.get("samples", []) or [])
            report.findings = list(out.get("findings", []) or [])
            report.actions = list(out.get("actions", []) or [])
            report.by_tier = dict((out.get("summary") or {}).get("by_tier", {}))
            report.error = out.get("error")
        except Exception as e:
            logger.exception("scan_failed")
            report.error = str(e)
        finally:
            self._scanning = False

        report.finished_at = dt.datetime.now(dt.UTC)
        self.scans_completed += 1
        self.last_report = report
        logger.info(
            "scan_done",
            extra={
                "samples": report.samples,
                "threats": len(report.threats),
                "by_tier": report.by_tier,
                "error": report.error,
            },
        )
        return report

    async def run(self) -> None:
        if not self.cfg.enabled:
            logger.info("detection_disabled")
            return
        self._stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        next_at = loop.time()
        logger.info("detection_loop_started", extra={"interval_s": self.cfg.interval_s})
        try:
            while not self._stop.is_set():
                if self._current is not None and not self._current.done():
                    self.ticks_skipped += 1
                    logger.warning("scan_tick_skipped", extra={"skipped": self.ticks_skipped})
                else:
                    self._current = asyncio.create_task(self.scan_once())

                next_at += self.cfg.interval_s
                delay = next_at - loop.time()
                if delay < 0:
                    next_at = loop.time()
                    delay = 0.0
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            if self._current is not None and not self._current.done():
                await asyncio.gather(self._current, return_exceptions=True)
            logger.info("detection_loop_stopped")

    def start(self) -> Optional[asyncio.Task]:
        if not self.cfg.enabled or self.running:
            return self._runner
        self._runner = asyncio.create_task(self.run())
        return self._runner

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._runner is not None:
            await asyncio.gather(self._runner, return_exceptions=True)
            self._runner = None


@dataclass
class DefenseService:
    cfg: DetectionConfig
    store: MitigationStore
    alert_manager: AlertManager
    dispatcher: AlertDispatcher
    analysis: AnalysisAgent
    loop: DetectionLoop

    async def start(self) -> None:
        self.dispatcher.start()
        self.loop.start()
        logger.info(
            "service_started",
            extra={"detection_enabled": self.cfg.enabled, "dry_run": self.store.executor.dry_run},
        )

    async def stop(self) -> None:
        await self.loop.stop()
        await self.dispatcher.stop()

    async def trigger_scan(self) -> ScanReport:
        logger.info("manual_scan_triggered")
        return await self.loop.scan_once()

    async def analyze(self, address: str) -> AddressAnalysis:
        return await self.analysis.analyze_address(address, self.cfg.analysis_window)

    def security_status(self) -> Dict[str, Any]:
        last = self.loop.last_report
        return {
            "detection_enabled": self.cfg.enabled,
            "loop_running": self.loop.running,
            "scanning": self.loop.scanning,
            "scans_completed": self.loop.scans_completed,
            "ticks_skipped": self.loop.ticks_skipped,
            "interval_seconds": self.cfg.interval_s,
            "scan_window_seconds": self.cfg.scan_window_s,
            "analysis_window_seconds": self.cfg.analysis_window_s,
            "thresholds": self.cfg.thresholds.as_dict(),
            "alerts_dropped": self.dispatcher.dropped,
            "last_scan": last.to_dict() if last else None,
        }


def build_traffic_source(cfg: AppConfig, timeout_s: float) -> TrafficAggregateSource:
    mode = str(cfg.get("traffic", "mode", default="influx")).lower()
    if mode == "mock":
        return MockTrafficSource()
    influx = InfluxConfig(
        url=str(cfg.get("traffic", "influx", "url", default="http://localhost:8086")),
        token=os.getenv("INFLUX_TOKEN") or str(cfg.get("traffic", "influx", "token", default="") or ""),
        org=str(cfg.get("traffic", "influx", "org", default="defense-org")),
        bucket=str(cfg.get("traffic", "influx", "bucket", default="traffic")),
        measurement=str(cfg.get("traffic", "influx", "measurement", default="traffic_data")),
        field=str(cfg.get("traffic", "influx", "field", default="packetCount")),
        source_tag=str(cfg.get("traffic", "influx", "source_tag", default="sourceIp")),
    )
    return InfluxTrafficSource(influx, timeout_s=timeout_s)


def build_service(
    cfg: AppConfig,
    source: Optional[TrafficAggregateSource] = None,
    sink: Optional[AlertSink] = None,
) -> DefenseService:
    det = DetectionConfig(
        enabled=bool(cfg.get("detection", "enabled", default=True)),
        interval_s=float(cfg.get("detection", "interval_seconds", default=30)),
        scan_window_s=int(cfg.get("detection", "scan_window_seconds", default=60)),
        analysis_window_s=int(cfg.get("detection", "analysis_window_seconds", default=300)),
        query_timeout_s=float(cfg.get("detection", "query_timeout_seconds", default=10)),
        thresholds=TierThresholds(
            low=int(cfg.get("detection", "thresholds", "low", default=1_000)),
            medium=int(cfg.get("detection", "thresholds", "medium", default=5_000)),
            high=int(cfg.get("detection", "thresholds", "high", default=15_000)),
            critical=int(cfg.get("detection", "thresholds", "critical", default=50_000)),
        ),
    )

    executor = build_executor(
        dry_run=bool(cfg.get("mitigation", "dry_run", default=True)),
        block_script=str(cfg.get("mitigation", "block_script", default="/usr/local/bin/block_ip.sh")),
        unblock_script=str(cfg.get("mitigation", "unblock_script", default="/usr/local/bin/unblock_ip.sh")),
        timeout_s=float(cfg.get("mitigation", "command_timeout_seconds", default=30)),
    )
    store = MitigationStore(
        MitigationConfig(
            enabled=bool(cfg.get("mitigation", "enabled", default=True)),
            max_blocked=int(cfg.get("mitigation", "max_blocked", default=100)),
            protected=tuple(cfg.get("mitigation", "protected", default=None) or DEFAULT_PROTECTED),
        ),
        executor,
    )

    alert_manager = AlertManager(
        enabled=bool(cfg.get("alerts", "enabled", default=True)),
        telegram=TelegramConfig(
            enabled=bool(cfg.get("alerts", "telegram", "enabled", default=False)),
            bot_token=str(cfg.get("alerts", "telegram", "bot_token", default="")),
            chat_id=str(cfg.get("alerts", "telegram", "chat_id", default="")),
        ),
        slack=SlackConfig(
            enabled=bool(cfg.get("alerts", "slack", "enabled", default=False)),
            webhook_url=str(cfg.get("alerts", "slack", "webhook_url", default="")),
        ),
        email=EmailConfig(
            enabled=bool(cfg.get("alerts", "email", "enabled", default=False)),
            smtp_host=str(cfg.get("alerts", "email", "smtp_host", default="")),
            smtp_port=int(cfg.get("alerts", "email", "smtp_port", default=587)),
            username=str(cfg.get("alerts", "email", "username", default="")),
            password=str(cfg.get("alerts", "email", "password", default="")),
            sender=str(cfg.get("alerts", "email", "from", default="no-reply@floodgate.local")),
            to=str(cfg.get("alerts", "email", "to", default="")),
        ),
    )
    dispatcher = AlertDispatcher(
        sink or alert_manager,
        max_pending=int(cfg.get("alerts", "max_pending", default=100)),
        workers=int(cfg.get("alerts", "workers", default=2)),
    )

    monitoring = MonitoringAgent(source or build_traffic_source(cfg, det.query_timeout_s), query_timeout_s=det.query_timeout_s)
    analysis = AnalysisAgent(monitoring=monitoring, thresholds=det.thresholds)
    response = ResponseAgent(
        store=store,
        alerts=dispatcher,
        auto_mitigate_tier=ThreatTier.parse(str(cfg.get("mitigation", "auto_mitigate_tier", default="HIGH"))),
        auto_block=bool(cfg.get("mitigation", "auto_block", default=True)),
    )

    hours = float(cfg.get("mitigation", "auto_unblock_hours", default=0) or 0)
    loop = DetectionLoop(
        det,
        monitoring,
        analysis,
        response,
        store,
        auto_unblock_after=dt.timedelta(hours=hours) if hours > 0 else None,
    )
    return DefenseService(
        cfg=det,
        store=store,
        alert_manager=alert_manager,
        dispatcher=dispatcher,
        analysis=analysis,
        loop=loop,
    )


async def run_service_forever() -> None:
    cfg = load_config()
    setup_logging(level=str(cfg.get("app", "log_level", default="INFO")))

    service = build_service(cfg)
    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()


def main() -> None:
    asyncio.run(run_service_forever())


if __name__ == "__main__":
    main()
