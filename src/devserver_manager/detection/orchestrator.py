"""
Detection Orchestrator.

Runs inventory, join and classification passes and keeps the result of the
last complete pass as an immutable snapshot. A refresh replaces the snapshot
in a single assignment, so readers see either the old pass or the new one.
"""

import asyncio
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union, Any
from urllib.parse import urlparse

from ..inventory.joiner import enrich, join
from ..inventory.parsers import is_valid_pid
from ..inventory.provider import InventoryProvider
from ..models import ServerInsight, ServerRecord, ServerType, UNKNOWN_PORT
from ..utils.config import DetectionConfig
from ..utils.errors import InventoryError, ValidationError
from ..utils.logging import get_logger
from .classifier import ServerClassifier

logger = get_logger(__name__)


@dataclass(frozen=True)
class CacheSnapshot:
    """The servers produced by one detection pass."""
    servers: Tuple[ServerRecord, ...] = ()
    taken_at: Optional[float] = None
    taken_at_wall: Optional[datetime] = None


class DetectionOrchestrator:
    """Cache-aware front end over inventory and classification."""

    def __init__(
        self,
        inventory: InventoryProvider,
        classifier: Optional[ServerClassifier] = None,
        config: Optional[DetectionConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the orchestrator.

        Args:
            inventory: Source of process and socket tables
            classifier: Classifier applied to every enriched record
            config: Detection settings (cache duration)
            clock: Monotonic clock, replaceable in tests
        """
        self.inventory = inventory
        self.config = config or DetectionConfig()
        self.classifier = classifier or ServerClassifier(self.config)
        self.cache_duration = self.config.cache_duration
        self._clock = clock
        self._snapshot = CacheSnapshot()
        self._refresh_lock = asyncio.Lock()
        self._passes = 0
        self._failures = 0

    @property
    def snapshot(self) -> CacheSnapshot:
        return self._snapshot

    def _is_fresh(self, snapshot: CacheSnapshot) -> bool:
        if not snapshot.servers or snapshot.taken_at is None:
            return False
        return self._clock() - snapshot.taken_at < self.cache_duration

    async def detect_servers(self) -> List[ServerRecord]:
        """
        Get development servers, from cache when fresh.

        Returns:
            Servers from the current snapshot or a new pass
        """
        snapshot = self._snapshot
        if self._is_fresh(snapshot):
            logger.debug("detection_cache_hit", servers=len(snapshot.servers))
            return list(snapshot.servers)

        if self._refresh_lock.locked() and snapshot.servers:
            # Another caller is refreshing; serve the previous pass
            return list(snapshot.servers)

        async with self._refresh_lock:
            snapshot = self._snapshot
            if self._is_fresh(snapshot):
                return list(snapshot.servers)
            return await self._refresh()

    async def force_refresh(self) -> List[ServerRecord]:
        """
        Run a new detection pass regardless of cache freshness.

        The current snapshot stays readable while the pass runs and is
        only replaced when the pass succeeds.
        """
        async with self._refresh_lock:
            return await self._refresh()

    def clear_cache(self) -> None:
        """Drop the cached snapshot."""
        self._snapshot = CacheSnapshot()
        logger.debug("detection_cache_cleared")

    async def _refresh(self) -> List[ServerRecord]:
        previous = self._snapshot
        started = self._clock()
        self._passes += 1

        try:
            processes, bindings = await asyncio.gather(
                self.inventory.list_processes(),
                self.inventory.list_listening_ports(),
            )
            if not processes:
                raise InventoryError("Process table came back empty")

            observed_at = datetime.now(timezone.utc)
            port_map = join(bindings, processes, observed_at)
            candidates = enrich(processes, port_map, observed_at)
            classified = (self.classifier.classify(c) for c in candidates)
            servers = self.filter_valid_servers(s for s in classified if s is not None)
        except InventoryError as e:
            self._failures += 1
            logger.warning(
                "detection_pass_failed",
                error=str(e),
                fallback_servers=len(previous.servers)
            )
            return list(previous.servers)
        except Exception as e:
            self._failures += 1
            logger.error(
                "detection_pass_error",
                error=str(e),
                error_type=type(e).__name__,
                fallback_servers=len(previous.servers),
                exc_info=True
            )
            return list(previous.servers)

        self._snapshot = CacheSnapshot(
            servers=tuple(servers),
            taken_at=self._clock(),
            taken_at_wall=observed_at,
        )
        logger.info(
            "detection_pass_completed",
            processes=len(processes),
            listening=len(bindings),
            servers=len(servers),
            duration_ms=round((self._clock() - started) * 1000, 1),
        )
        return list(servers)

    # Validation

    def validate_server(self, server: ServerRecord) -> bool:
        """Check the invariants of a ServerRecord."""
        if not is_valid_pid(server.pid):
            return False
        if not server.name:
            return False
        if server.port != UNKNOWN_PORT:
            port = server.port_number
            if port is None or not 1 <= port <= 65535:
                return False
        if server.url is not None:
            parsed = urlparse(server.url)
            if parsed.scheme not in ("http", "https") or not parsed.hostname:
                return False
            try:
                parsed.port
            except ValueError:
                return False
        return True

    def filter_valid_servers(self, servers: Iterable[ServerRecord]) -> List[ServerRecord]:
        """Drop records that fail validation, logging each one."""
        valid = []
        for server in servers:
            if self.validate_server(server):
                valid.append(server)
            else:
                logger.warning("invalid_server_dropped", pid=server.pid, port=server.port, url=server.url)
        return valid

    # Read-only views over the current snapshot

    def get_server_by_pid(self, pid: int) -> Optional[ServerRecord]:
        for server in self._snapshot.servers:
            if server.pid == pid:
                return server
        return None

    def get_servers_by_type(self, server_type: Union[str, ServerType]) -> List[ServerRecord]:
        wanted = ServerType(server_type)
        return [s for s in self._snapshot.servers if s.type is wanted]

    def get_servers_by_port(self, port: Union[int, str]) -> List[ServerRecord]:
        wanted = str(port)
        return [s for s in self._snapshot.servers if s.port == wanted]

    def get_server_stats(self) -> Dict[str, Any]:
        """Aggregate counts over the current snapshot."""
        servers = self._snapshot.servers
        return {
            "total": len(servers),
            "by_type": dict(Counter(s.type.value for s in servers)),
            "by_port": dict(Counter(s.port for s in servers)),
            "by_category": dict(Counter(s.category for s in servers)),
        }

    def get_insights(self) -> List[ServerInsight]:
        """Confidence, tags and priority for every cached server."""
        return [self.classifier.describe(s) for s in self._snapshot.servers]

    def get_cache_stats(self) -> Dict[str, Any]:
        snapshot = self._snapshot
        age = None if snapshot.taken_at is None else self._clock() - snapshot.taken_at
        return {
            "cached_servers": len(snapshot.servers),
            "last_check": snapshot.taken_at_wall.isoformat() if snapshot.taken_at_wall else None,
            "cache_age": age,
            "cache_duration": self.cache_duration,
            "is_fresh": self._is_fresh(snapshot),
            "passes": self._passes,
            "failures": self._failures,
        }

    def update_cache_duration(self, seconds: float) -> None:
        """Change how long a detection pass stays fresh."""
        if seconds < 0:
            raise ValidationError("cache_duration", seconds, "must be >= 0")
        self.cache_duration = seconds
        logger.info("cache_duration_updated", cache_duration=seconds)
