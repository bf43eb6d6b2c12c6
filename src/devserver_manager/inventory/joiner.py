"""Port-Process Joiner: overlays listening sockets on the process table."""

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..models import EnrichedProcess, PortBinding, ProcessRecord, SocketState
from ..utils.logging import get_logger

logger = get_logger(__name__)


def join(
    bindings: Iterable[PortBinding],
    processes: Iterable[ProcessRecord],
    observed_at: Optional[datetime] = None
) -> Dict[int, EnrichedProcess]:
    """
    Map each listening port to the process that owns it.

    Bindings whose PID is missing from the process list are dropped; the two
    queries are not atomic so a process may exit in between. When a port is
    reported more than once (IPv4 and IPv6), the first binding wins.

    Args:
        bindings: LISTEN sockets
        processes: Process table from the same pass
        observed_at: Timestamp of the pass, carried onto each record

    Returns:
        Enriched processes keyed by port
    """
    by_pid = {p.pid: p for p in processes}
    by_port: Dict[int, EnrichedProcess] = {}
    dropped = 0

    for binding in bindings:
        if binding.state is not SocketState.LISTEN:
            continue
        process = by_pid.get(binding.pid)
        if process is None:
            dropped += 1
            continue
        if binding.port in by_port:
            continue
        by_port[binding.port] = EnrichedProcess.from_process(process, binding, observed_at)

    if dropped:
        logger.debug("bindings_without_process_dropped", count=dropped)
    return by_port


def enrich(
    processes: Iterable[ProcessRecord],
    port_map: Dict[int, EnrichedProcess],
    observed_at: Optional[datetime] = None
) -> List[EnrichedProcess]:
    """
    Produce one enriched record per PID.

    Port-owning processes come first, each carrying the first port seen for
    it; the remaining processes follow without a port.
    """
    result: List[EnrichedProcess] = []
    seen = set()

    for enriched in port_map.values():
        if enriched.pid in seen:
            continue
        seen.add(enriched.pid)
        result.append(enriched)

    for process in processes:
        if process.pid in seen:
            continue
        seen.add(process.pid)
        result.append(EnrichedProcess.from_process(process, None, observed_at))

    return result
