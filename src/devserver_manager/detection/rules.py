"""
Pattern tables used by the classifier.

Heuristics are kept as ordered tuples of rules evaluated first-match-wins.
Every predicate here is a pure function of a process name or command line.
"""

import os
import re
from dataclasses import dataclass, field
from typing import Callable, Optional, Pattern, Tuple

from ..models import ServerType


CATEGORY_FRONTEND = "Frontend Frameworks"
CATEGORY_NODE = "Node.js Applications"
CATEGORY_PYTHON = "Python Applications"
CATEGORY_BUILD = "Build Tools"
CATEGORY_STATIC = "Static Servers"
CATEGORY_OTHER = "Other Development Servers"

AGENT_SIGNATURES = ("devserver_manager", "devserver-manager")


def _words(*patterns: str) -> Pattern:
    return re.compile(r"(?<![\w-])(?:" + "|".join(patterns) + r")(?![\w-])", re.IGNORECASE)


@dataclass(frozen=True)
class AgentIdentity:
    """How the agent recognises its own processes."""
    pid: int
    parent_pid: Optional[int] = None
    signatures: Tuple[str, ...] = AGENT_SIGNATURES

    @classmethod
    def current(cls) -> "AgentIdentity":
        return cls(pid=os.getpid(), parent_pid=os.getppid())

    def owns_pid(self, pid: int) -> bool:
        return pid == self.pid or (self.parent_pid is not None and pid == self.parent_pid)

    def matches_command(self, command_line: str) -> bool:
        lowered = command_line.lower()
        return any(sig in lowered for sig in self.signatures)


@dataclass(frozen=True)
class Rule:
    """A (predicate, builder) pair: when the predicate matches, build the labels."""
    predicate: Callable[[str], bool]
    server_type: ServerType
    label: str
    category: str
    tags: Tuple[str, ...] = field(default=())

    def matches(self, command_line: str) -> bool:
        return self.predicate(command_line)

    def build(self) -> Tuple[ServerType, str, str]:
        return self.server_type, self.label, self.category


def _contains(*patterns: str) -> Callable[[str], bool]:
    compiled = _words(*patterns)
    return lambda text: bool(compiled.search(text))


def _always(text: str) -> bool:
    return True


# Absolute exclusions

SYSTEM_PROCESS_NAMES = frozenset({
    # Windows
    "system", "idle", "registry", "smss", "csrss", "wininit", "winlogon",
    "services", "lsass", "svchost", "explorer", "dwm", "spoolsv", "taskhostw",
    "conhost", "fontdrvhost", "sihost", "ctfmon", "runtimebroker", "searchindexer",
    # POSIX
    "init", "launchd", "kernel_task", "kthreadd", "windowserver", "loginwindow",
    "sshd", "dbus-daemon", "xorg", "xwayland", "gnome-shell", "rsyslogd",
})

SYSTEM_PATH_FRAGMENTS = (
    "\\windows\\system32\\",
    "\\windows\\syswow64\\",
    "\\windows\\winsxs\\",
    "/system/library/",
    "/usr/libexec/",
)

# Production infrastructure

CRITICAL_PATTERN = _words(
    r"pm2", r"forever", r"systemd", r"supervisord?", r"launchd",
    r"nginx", r"apache2?", r"httpd", r"haproxy", r"varnishd?", r"traefik", r"caddy",
    r"iis", r"w3wp", r"tomcat", r"jetty",
    r"mongod", r"mongodb", r"mysqld?", r"mariadbd?", r"postgres(?:ql)?", r"postmaster",
    r"redis(?:-server)?", r"cassandra", r"oracle", r"sqlservr", r"sqlserver", r"elasticsearch",
    r"postfix", r"sendmail", r"smtpd?", r"dovecot", r"exim4?",
    r"crond?", r"backup", r"rsync", r"antivirus", r"firewall", r"security",
    r"gunicorn", r"uwsgi", r"daemon", r"production", r"prod",
)

CRITICAL_PATH_FRAGMENTS = (
    "\\windows\\",
    "\\program files\\",
    "\\program files (x86)\\",
    "\\programdata\\",
    "/usr/sbin/",
    "/usr/local/sbin/",
    "/sbin/",
    "/etc/",
    "/var/",
    "/opt/",
)

# Runtime families

_NODE_NAMES = frozenset({"node", "nodejs", "bun", "deno"})
# Next.js rewrites its process title
_NODE_TITLE = re.compile(r"^next-(?:server|router-worker|render-worker)\b", re.IGNORECASE)
_PYTHON_NAME = re.compile(r"^(?:python(?:\d+(?:\.\d+)*)?w?|pypy3?|py)$", re.IGNORECASE)

RUNTIME_NODE = "node"
RUNTIME_PYTHON = "python"


def name_stem(name: str) -> str:
    """Lowercase process name without a Windows .exe suffix."""
    stem = (name or "").strip().lower()
    return stem[:-4] if stem.endswith(".exe") else stem


def runtime_family(name: str) -> Optional[str]:
    """Identify the interpreter family from a process name."""
    stem = name_stem(name)
    if stem in _NODE_NAMES or _NODE_TITLE.match(stem):
        return RUNTIME_NODE
    if _PYTHON_NAME.match(stem):
        return RUNTIME_PYTHON
    return None


def executable_path(command_line: str) -> str:
    """Best-effort executable path at the start of a command line."""
    text = (command_line or "").strip()
    if not text:
        return ""
    if text.startswith('"'):
        return text[1:].split('"', 1)[0]
    exe = re.match(r"^(.*?\.exe)(?=\s|$)", text, re.IGNORECASE)
    if exe:
        return exe.group(1)
    return text.split()[0]


def is_system_process(name: str, command_line: str) -> bool:
    """OS-critical process names and binaries under system directories."""
    stem = name_stem(name)
    if stem in SYSTEM_PROCESS_NAMES or stem.startswith("systemd") or stem.startswith("["):
        return True
    path = executable_path(command_line).lower()
    return any(fragment in path for fragment in SYSTEM_PATH_FRAGMENTS)


def is_critical_process(name: str, command_line: str) -> bool:
    """
    Production infrastructure or binaries under system/program-files paths.

    Interpreters are exempt from the path check: node or python installed
    under Program Files still runs developer code.
    """
    if CRITICAL_PATTERN.search(f"{name} {command_line}"):
        return True
    path = executable_path(command_line).lower()
    if runtime_family(re.split(r"[\\/]", path)[-1]) is not None:
        return False
    return any(fragment in path for fragment in CRITICAL_PATH_FRAGMENTS)


# Framework rules, first match wins

STATIC_RULES: Tuple[Rule, ...] = (
    Rule(_contains(r"http-server"), ServerType.STATIC, "HTTP Server", CATEGORY_STATIC, ("static",)),
    Rule(_contains(r"live-server"), ServerType.STATIC, "Live Server", CATEGORY_STATIC, ("static", "live-reload")),
    Rule(_contains(r"browser-sync"), ServerType.STATIC, "BrowserSync Server", CATEGORY_STATIC, ("static", "live-reload")),
    Rule(_contains(r"webpack(?:-dev-server)?"), ServerType.STATIC, "Webpack Dev Server", CATEGORY_BUILD, ("webpack", "bundler")),
    Rule(_contains(r"parcel"), ServerType.STATIC, "Parcel Dev Server", CATEGORY_BUILD, ("parcel", "bundler")),
    Rule(_contains(r"rollup"), ServerType.STATIC, "Rollup Dev Server", CATEGORY_BUILD, ("rollup", "bundler")),
    Rule(_contains(r"serve"), ServerType.STATIC, "Static File Server", CATEGORY_STATIC, ("static",)),
)

NODE_RULES: Tuple[Rule, ...] = (
    Rule(_contains(r"react-scripts"), ServerType.REACT, "React Dev Server", CATEGORY_FRONTEND, ("react",)),
    Rule(_contains(r"next(?:-server)?"), ServerType.REACT, "Next.js Server", CATEGORY_FRONTEND, ("nextjs", "react")),
    Rule(_contains(r"nuxi", r"nuxt"), ServerType.REACT, "Nuxt.js Server", CATEGORY_FRONTEND, ("nuxt", "vue")),
    Rule(_contains(r"vite"), ServerType.REACT, "Vite Dev Server", CATEGORY_BUILD, ("vite", "bundler")),
) + STATIC_RULES + (
    Rule(_contains(r"nodemon", r"ts-node", r"express"), ServerType.NODE, "Express/Node Server", CATEGORY_NODE, ("express",)),
    Rule(_always, ServerType.NODE, "Node.js Server", CATEGORY_NODE),
)

PYTHON_RULES: Tuple[Rule, ...] = (
    Rule(_contains(r"django", r"manage\.py\s+runserver"), ServerType.PYTHON, "Django Dev Server", CATEGORY_PYTHON, ("django",)),
    Rule(_contains(r"flask"), ServerType.PYTHON, "Flask Web Server", CATEGORY_PYTHON, ("flask",)),
    Rule(_contains(r"fastapi"), ServerType.PYTHON, "FastAPI Server", CATEGORY_PYTHON, ("fastapi",)),
    Rule(_contains(r"uvicorn", r"hypercorn", r"daphne", r"asgi"), ServerType.PYTHON, "ASGI Server", CATEGORY_PYTHON, ("asgi",)),
    Rule(_contains(r"tornado"), ServerType.PYTHON, "Tornado Web Server", CATEGORY_PYTHON, ("tornado",)),
    Rule(_contains(r"aiohttp"), ServerType.PYTHON, "AsyncIO Web Server", CATEGORY_PYTHON, ("aiohttp",)),
    Rule(_contains(r"quart"), ServerType.PYTHON, "Quart Web Server", CATEGORY_PYTHON, ("quart",)),
    Rule(_contains(r"sanic"), ServerType.PYTHON, "Sanic Server", CATEGORY_PYTHON, ("sanic",)),
    Rule(_contains(r"streamlit"), ServerType.PYTHON, "Streamlit App", CATEGORY_PYTHON, ("streamlit", "data")),
    Rule(_contains(r"jupyter(?:-lab|-notebook)?"), ServerType.PYTHON, "Jupyter Server", CATEGORY_PYTHON, ("jupyter", "data")),
    Rule(_contains(r"dash"), ServerType.PYTHON, "Dash App", CATEGORY_PYTHON, ("dash", "data")),
    Rule(_contains(r"bokeh"), ServerType.PYTHON, "Bokeh Server", CATEGORY_PYTHON, ("bokeh", "data")),
    Rule(_contains(r"gradio"), ServerType.PYTHON, "Gradio App", CATEGORY_PYTHON, ("gradio",)),
    Rule(_contains(r"runserver"), ServerType.PYTHON, "Python Dev Server", CATEGORY_PYTHON),
    Rule(_contains(r"http\.server", r"SimpleHTTPServer"), ServerType.PYTHON, "Python HTTP Server", CATEGORY_PYTHON, ("static",)),
    Rule(_contains(r"wsgi"), ServerType.PYTHON, "WSGI Server", CATEGORY_PYTHON, ("wsgi",)),
    Rule(_always, ServerType.PYTHON, "Python Web Server", CATEGORY_PYTHON),
)

PYTHON_DEV_PATTERN = _words(
    r"flask", r"django", r"fastapi", r"uvicorn", r"hypercorn", r"daphne", r"tornado",
    r"aiohttp", r"quart", r"sanic", r"falcon", r"bottle", r"cherrypy", r"pyramid", r"pserve",
    r"streamlit", r"jupyter(?:-lab|-notebook)?", r"bokeh", r"gradio", r"dash",
    r"runserver", r"devserver", r"manage\.py", r"wsgi", r"asgi",
    r"http\.server", r"SimpleHTTPServer",
    r"app\.py", r"main\.py", r"server\.py",
    r"localhost", r"127\.0\.0\.1", r"0\.0\.0\.0",
)

DEVELOPMENT_HINT_PATTERN = _words(r"dev", r"develop(?:ment)?", r"watch", r"hot", r"reload", r"localhost")

# Port extraction, first valid match wins

PORT_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"(?<![\w-])--port[=\s]+(\d+)", re.IGNORECASE),
    re.compile(r"(?<![\w-])-p\s+(\d+)"),
    re.compile(r"(?<![\w-])-port\s+(\d+)", re.IGNORECASE),
    re.compile(r"\bport\s*[:=]\s*(\d+)", re.IGNORECASE),
    re.compile(r"localhost:(\d+)", re.IGNORECASE),
    re.compile(r"127\.0\.0\.1:(\d+)"),
    re.compile(r"0\.0\.0\.0:(\d+)"),
    re.compile(r":(\d+)\b"),
)


def extract_port(command_line: str) -> Optional[int]:
    """Pull a port number out of a command line."""
    if not command_line:
        return None
    for pattern in PORT_PATTERNS:
        for match in pattern.finditer(command_line):
            port = int(match.group(1))
            if 1 <= port <= 65535:
                return port
    return None


def first_match(rules: Tuple[Rule, ...], command_line: str) -> Optional[Rule]:
    """Return the first rule whose predicate accepts the command line."""
    for rule in rules:
        if rule.matches(command_line):
            return rule
    return None
