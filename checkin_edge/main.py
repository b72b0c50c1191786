"""
Entry point for the check-in edge node.

Usage (from project root)::

    python -m checkin_edge.main --config config/checkin_edge.yaml

This script loads the configuration, initializes logging, opens the
outbox, loads the roster, and starts the sync worker, the connectivity
monitor, the camera session and the local status API. It runs until
interrupted.
"""

from __future__ import annotations

import argparse
import datetime
import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import uvicorn
from dotenv import load_dotenv

from .config import Settings, load_settings
from .core.errors import ConfigError
from .cv.camera import OpenCVCamera
from .cv.face_id import InsightFaceExtractor
from .cv.matcher import EmbeddingMatcher
from .cv.stability import StabilityTracker
from .events.backend import BackendClient
from .events.connectivity import ConnectivityMonitor
from .events.heartbeat import StatusHeartbeat
from .events.outbox import Outbox, load_outbox_settings
from .events.sync import SyncManager
from .logging_config import parse_level, setup_logging
from .models.event import StatusModel, TrackerStatusModel, utc_iso
from .policy.arbitrator import CheckinArbitrator
from .roster.manager import RosterManager
from .runtime.detection_loop import CheckinSession
from .runtime.scanner import ScannerChannel
from .status_api import create_app


def make_status_provider(
    device_id: str,
    sync: SyncManager,
    matcher: EmbeddingMatcher,
    tracker: Optional[StabilityTracker] = None,
) -> Callable[[], StatusModel]:
    def _status() -> StatusModel:
        sync_status = sync.status()
        tracker_status = None
        if tracker is not None:
            update = tracker.snapshot()
            tracker_status = TrackerStatusModel(
                state=update.state.value,
                tracked_id=update.tracked_id,
                progress=update.progress,
                guidance=update.guidance,
            )
        return StatusModel(
            device_id=device_id,
            online=sync_status["online"],
            pending_count=sync_status["pending_count"],
            dead_count=sync_status["dead_count"],
            last_sync_utc=sync_status["last_sync_utc"],
            roster_size=len(matcher),
            tracker=tracker_status,
            timestamp_utc=utc_iso(datetime.datetime.now(datetime.timezone.utc)),
        )

    return _status


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check-in Edge Node")
    parser.add_argument(
        "--config",
        type=str,
        default=os.getenv("CHECKIN_CONFIG_PATH", "config/checkin_edge.yaml"),
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=os.getenv("CHECKIN_LOG_LEVEL", "INFO"),
        help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=os.getenv("CHECKIN_LOG_FILE"),
        help="Also write logs to this file",
    )
    parser.add_argument(
        "--no-camera",
        action="store_true",
        help="Run without the face session (scanner check-ins only)",
    )
    parser.add_argument(
        "--no-status-api",
        action="store_true",
        help="Do not serve the local status API",
    )
    return parser.parse_args(argv)


def _start_status_api(app, settings: Settings, logger: logging.Logger) -> uvicorn.Server:
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=settings.sync.status_api_host,
            port=int(settings.sync.status_api_port),
            log_level="warning",
        )
    )
    thread = threading.Thread(target=server.run, name="StatusAPI", daemon=True)
    thread.start()
    logger.info(
        "Status API listening on http://%s:%s",
        settings.sync.status_api_host,
        settings.sync.status_api_port,
    )
    return server


def main(argv: List[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(level=parse_level(args.log_level), log_file=args.log_file)
    logger = logging.getLogger("main")
    try:
        settings: Settings = load_settings(args.config)
    except Exception as exc:
        logger.error("Failed to load configuration: %s", exc)
        return 1
    logger.info(
        "Loaded settings for device %s (%s slots, timezone %s)",
        settings.device_id,
        len(settings.slots),
        settings.timezone,
    )

    outbox_settings = load_outbox_settings()
    try:
        outbox = Outbox(
            outbox_settings.db_path,
            max_queue=outbox_settings.max_queue,
            max_attempts=outbox_settings.max_attempts,
        )
    except Exception as exc:
        # Without durable storage no check-in can be accepted.
        logger.error("Outbox init failed path=%s: %s", outbox_settings.db_path, exc)
        return 1

    backend = BackendClient(
        settings.sync.backend_url,
        token=settings.sync.backend_token,
        timeout_sec=settings.sync.request_timeout_sec,
    )
    sync = SyncManager(outbox, backend, outbox_settings)
    arbitrator = CheckinArbitrator(
        settings.arbitration,
        outbox,
        device_id=settings.device_id,
        slots=settings.slots,
        timezone=settings.timezone,
        on_enqueued=sync.notify_enqueued,
    )
    matcher = EmbeddingMatcher(
        max_distance=settings.matcher.max_distance,
        embedding_dim=settings.matcher.embedding_dim,
    )
    roster = RosterManager(
        matcher,
        backend,
        cache_dir=Path(settings.sync.roster_cache_dir),
        sync_interval_sec=settings.sync.roster_sync_interval_sec,
    )
    monitor = ConnectivityMonitor(
        backend.is_reachable,
        interval_sec=settings.sync.connectivity_probe_sec,
        listeners=[sync.set_online],
    )
    scanner = ScannerChannel(arbitrator, roster.resolve_code)

    tracker: Optional[StabilityTracker] = None
    session: Optional[CheckinSession] = None
    if not args.no_camera:
        tracker = StabilityTracker(
            threshold_ms=settings.stability.threshold_ms,
            min_confidence=settings.stability.min_confidence,
            min_face_ratio=settings.stability.min_face_ratio,
            max_face_ratio=settings.stability.max_face_ratio,
        )
        session = CheckinSession(
            camera=OpenCVCamera(settings.loop.camera_source),
            extractor=InsightFaceExtractor(),
            matcher=matcher,
            tracker=tracker,
            arbitrator=arbitrator,
            loop_config=settings.loop,
            match_threshold=settings.matcher.threshold,
            is_online=lambda: sync.online,
        )

    status_provider = make_status_provider(settings.device_id, sync, matcher, tracker)
    heartbeat: Optional[StatusHeartbeat] = None
    if settings.mqtt.host:
        heartbeat = StatusHeartbeat(settings.mqtt, settings.device_id, status_provider)

    roster.start()
    sync.start()
    monitor.start()
    if heartbeat is not None:
        heartbeat.start()
    server = None
    if not args.no_status_api:
        app = create_app(status_provider, scanner=scanner, token=os.getenv("CHECKIN_STATUS_TOKEN"))
        server = _start_status_api(app, settings, logger)
    exit_code = 0
    if session is not None:
        try:
            session.start()
        except ConfigError as exc:
            logger.error("Camera session misconfigured: %s", exc)
            exit_code = 1
        except Exception as exc:
            logger.error("Camera session failed to start: %s", exc)
            session = None

    if exit_code == 0:
        logger.info("Check-in node started; press Ctrl+C to stop")
    try:
        while exit_code == 0:
            if session is not None and session.fatal_error is not None:
                logger.error("Camera session stopped: %s", session.fatal_error)
                exit_code = 2
                break
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutting down check-in node…")
    finally:
        if session is not None:
            session.close()
        if server is not None:
            server.should_exit = True
        if heartbeat is not None:
            heartbeat.stop()
        monitor.stop()
        sync.stop()
        roster.stop()
        outbox.close()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
