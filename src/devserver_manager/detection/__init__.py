"""Development server detection: classification and cached detection passes."""

from .classifier import ServerClassifier
from .orchestrator import DetectionOrchestrator, CacheSnapshot
from .rules import AgentIdentity, extract_port, runtime_family

__all__ = [
    'ServerClassifier',
    'DetectionOrchestrator',
    'CacheSnapshot',
    'AgentIdentity',
    'extract_port',
    'runtime_family',
]
