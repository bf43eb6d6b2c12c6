"""
Safety-aware classifier.

Turns an enriched process record into a ServerRecord when it looks like a
development server the user may stop, and into None otherwise. Safety
exclusions always run before any framework heuristic.
"""

from typing import Optional, Tuple

from ..models import (
    EnrichedProcess,
    Importance,
    ProcessRecord,
    ServerInsight,
    ServerRecord,
    ServerType,
    UNKNOWN_PORT,
)
from ..utils.config import DetectionConfig
from . import rules
from .rules import AgentIdentity, Rule


GENERIC_LABELS = frozenset({"Node.js Server", "Python Web Server", "Static File Server"})

_PRIORITY_BY_TYPE = {
    ServerType.REACT: "high",
    ServerType.NODE: "medium",
    ServerType.PYTHON: "medium",
    ServerType.STATIC: "low",
}


class ServerClassifier:
    """Classifies enriched process records. Pure: performs no I/O."""

    def __init__(
        self,
        config: Optional[DetectionConfig] = None,
        identity: Optional[AgentIdentity] = None
    ):
        """
        Initialize the classifier.

        Args:
            config: Detection settings providing the web-like port set
            identity: The agent's own PID and launch signatures
        """
        self.config = config or DetectionConfig()
        self.identity = identity or AgentIdentity.current()

    def is_agent_process(self, pid: int, command_line: str) -> bool:
        """Check whether a PID or command line belongs to the agent itself."""
        return self.identity.owns_pid(pid) or self.identity.matches_command(command_line or "")

    def is_protected(self, record) -> bool:
        """
        Check the absolute and critical exclusions for a record.

        Args:
            record: Any object with pid, name and command_line attributes

        Returns:
            True if the process must never be offered for termination
        """
        name = record.name or ""
        command_line = record.command_line or ""
        if self.is_agent_process(record.pid, command_line):
            return True
        if rules.is_system_process(name, command_line):
            return True
        return rules.is_critical_process(name, command_line)

    def classify(self, record: EnrichedProcess) -> Optional[ServerRecord]:
        """
        Classify one enriched process.

        Args:
            record: Process with optional bound port

        Returns:
            ServerRecord for a stoppable development server, otherwise None
        """
        if self.is_protected(record):
            return None

        command_line = record.command_line or ""
        rule = self._match_rule(record, command_line)
        if rule is None:
            return None

        server_type, label, category = rule.build()
        port, url = self._derive_port(record, command_line)

        return ServerRecord(
            pid=record.pid,
            name=label,
            type=server_type,
            port=port,
            url=url,
            command=command_line,
            start_time=record.observed_at,
            category=category,
            process_name=record.name,
            importance=Importance.DEVELOPMENT,
            is_safe_to_stop=True,
        )

    def classify_process(self, process: ProcessRecord) -> Optional[ServerRecord]:
        """Classify a bare process record with no port attached."""
        return self.classify(EnrichedProcess.from_process(process))

    def _match_rule(self, record: EnrichedProcess, command_line: str) -> Optional[Rule]:
        family = rules.runtime_family(record.name)
        text = command_line or record.name

        if family == rules.RUNTIME_NODE:
            return rules.first_match(rules.NODE_RULES, text)
        if family == rules.RUNTIME_PYTHON:
            if not self.is_python_dev_server(record):
                return None
            return rules.first_match(rules.PYTHON_RULES, text)
        return rules.first_match(rules.STATIC_RULES, command_line)

    def is_python_dev_server(self, record: EnrichedProcess) -> bool:
        """Python processes only count when a port or a web framework says so."""
        if record.port is not None and (
            self.config.is_web_port(record.port) or self.config.is_dev_port(record.port)
        ):
            return True
        command_line = record.command_line or ""
        if rules.PYTHON_DEV_PATTERN.search(command_line):
            return True
        return rules.extract_port(command_line) is not None

    def _derive_port(self, record: EnrichedProcess, command_line: str) -> Tuple[str, Optional[str]]:
        port = record.port if record.port else rules.extract_port(command_line)
        if not port:
            return UNKNOWN_PORT, None
        return str(port), f"http://localhost:{port}"

    def describe(self, server: ServerRecord) -> ServerInsight:
        """
        Derive presentation hints for a classified server.

        Confidence starts at 50 and grows with each piece of corroborating
        evidence; tags name the type, the port class and any frameworks seen.
        """
        confidence = 50
        tags = [server.type.value]

        port = server.port_number
        if port is not None:
            confidence += 20
            tags.append(f"port:{port}")
            if self.config.is_web_port(port):
                confidence += 5
                tags.append("web-port")
        else:
            tags.append("no-port")

        if server.name not in GENERIC_LABELS:
            confidence += 15
        if server.url:
            confidence += 5
        if rules.DEVELOPMENT_HINT_PATTERN.search(server.command):
            confidence += 5
            tags.append("dev-mode")

        for rule in rules.NODE_RULES + rules.PYTHON_RULES:
            if rule.label == server.name:
                tags.extend(t for t in rule.tags if t not in tags)
                break

        return ServerInsight(
            pid=server.pid,
            confidence=min(confidence, 100),
            tags=tuple(tags),
            priority=_PRIORITY_BY_TYPE.get(server.type, "low"),
        )
