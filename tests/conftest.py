"""Shared fixtures: a recording fake host and a wired orchestrator."""

import re
from dataclasses import dataclass
from typing import Optional

import pytest

import provisio.workflows  # noqa: F401
from provisio.config import ProvisioConfig
from provisio.errors import ProvisioError
from provisio.execute import StepExecutor
from provisio.host import CommandResult
from provisio.orchestrator import Orchestrator
from provisio.persistence.inmemory import InMemoryWorkflowRepository
from provisio.utils import retry
from provisio.vault import InMemorySecretStore

_CREATE_DB_RE = re.compile(r"CREATE DATABASE IF NOT EXISTS `(\w+)`")
_DROP_DB_RE = re.compile(r"DROP DATABASE IF EXISTS `(\w+)`")


@dataclass
class Failure:
    match: str
    error: Optional[BaseException]
    exit_code: int
    times: int
    after: bool = False


class FakeHost:
    """Records every command, query and file write instead of touching the system.

    ``fail`` makes the next ``times`` calls whose text contains ``match``
    raise ``error`` or exit with ``exit_code``. With ``after=True`` the call
    takes effect first, as if the process died once the command had run.
    Commands are matched on their space-joined argv, file writes on
    ``"write <path>"`` and queries on the SQL text.

    Directory listings come from ``listings`` when set there. Release
    archives unpacked below an ``extract`` directory list as a small PHP
    application; any other directory lists what was created in it.
    """

    def __init__(self):
        self.commands = []
        self.queries = []
        self.files = {}
        self.modes = {}
        self.paths = set()
        self.schemas = set()
        self.users = {"root", "www-data", "mail"}
        self.tools = {"certbot", "composer", "npx", "wget"}
        self.listings = {}
        self.certificates = set()
        self._failures = []

    def fail(self, match, *, error=None, exit_code=1, times=1, after=False):
        self._failures.append(Failure(match, error, exit_code, times, after))

    def _injected(self, text, after=False):
        for failure in self._failures:
            if failure.times and failure.after == after and failure.match in text:
                failure.times -= 1
                return failure
        return None

    def ran(self, *prefix):
        return any(cmd[: len(prefix)] == prefix for cmd in self.commands)

    def count(self, *prefix):
        return sum(1 for cmd in self.commands if cmd[: len(prefix)] == prefix)

    def index(self, *prefix):
        for i, cmd in enumerate(self.commands):
            if cmd[: len(prefix)] == prefix:
                return i
        raise AssertionError(f"{' '.join(prefix)} was never run")

    def entries(self, directory):
        directory = directory.rstrip("/")
        if directory in self.listings:
            return list(self.listings[directory])
        if "/extract" in directory:
            return ["index.php", "wp-content"]
        prefix = f"{directory}/"
        names = {
            path[len(prefix):].split("/", 1)[0]
            for path in (*self.paths, *self.files)
            if path.startswith(prefix)
        }
        return sorted(names)

    def _exists(self, path):
        prefix = f"{path}/"
        return path in self.paths or path in self.files or any(
            p.startswith(prefix) for p in (*self.paths, *self.files)
        )

    def _remove(self, path):
        prefix = f"{path}/"
        self.paths = {p for p in self.paths if p != path and not p.startswith(prefix)}
        for name in [f for f in self.files if f == path or f.startswith(prefix)]:
            del self.files[name]

    @staticmethod
    def _raise(failure, argv=None):
        if failure.error is not None:
            raise failure.error
        if argv is None:
            raise ProvisioError("query failed")
        return CommandResult(argv=argv, exit_code=failure.exit_code)

    async def run_command(self, argv, timeout, cwd=None):
        argv = tuple(str(a) for a in argv)
        self.commands.append(argv)
        text = " ".join(argv)
        failure = self._injected(text)
        if failure is not None:
            return self._raise(failure, argv)
        result = self._perform(argv)
        failure = self._injected(text, after=True)
        if failure is not None:
            return self._raise(failure, argv)
        return result

    def _perform(self, argv):
        program = argv[0]
        if program == "test":
            return CommandResult(argv=argv, exit_code=0 if self._exists(argv[-1]) else 1)
        if program == "which":
            return CommandResult(argv=argv, exit_code=0 if argv[1] in self.tools else 1)
        if program == "ls":
            directory = argv[-1]
            if not self._exists(directory) and directory.rstrip("/") not in self.listings:
                if "/extract" not in directory:
                    return CommandResult(argv=argv, exit_code=2)
            names = self.entries(directory)
            return CommandResult(argv=argv, exit_code=0, stdout="\n".join(names).encode())
        if program == "id":
            return CommandResult(argv=argv, exit_code=0 if argv[-1] in self.users else 1)
        if program == "useradd":
            if argv[-1] in self.users:
                return CommandResult(argv=argv, exit_code=9)
            self.users.add(argv[-1])
        if program == "userdel":
            if argv[-1] not in self.users:
                return CommandResult(argv=argv, exit_code=6)
            self.users.discard(argv[-1])
        if program == "mkdir":
            self.paths.add(argv[-1])
        if program == "cp":
            source, target = argv[-2].rstrip("/."), argv[-1].rstrip("/")
            for name in self.entries(source):
                self.paths.add(f"{target}/{name}")
        if program == "rm":
            for path in argv[argv.index("--") + 1:]:
                self._remove(path)
        if argv[:2] == ("certbot", "certificates"):
            listing = "".join(f"  Certificate Name: {c}\n" for c in sorted(self.certificates))
            return CommandResult(argv=argv, exit_code=0, stdout=listing.encode())
        if argv[:2] == ("certbot", "--apache"):
            self.certificates.add(argv[argv.index("-d") + 1])
        return CommandResult(argv=argv, exit_code=0)

    async def write_file(self, path, data, mode=0o644):
        failure = self._injected(f"write {path}")
        if failure is not None:
            raise failure.error or ProvisioError("write failed")
        self.files[path] = data
        self.modes[path] = mode

    async def read_file(self, path):
        return self.files.get(path)

    async def query_database(self, sql, params=None):
        self.queries.append((sql, dict(params or {})))
        failure = self._injected(sql)
        if failure is not None:
            self._raise(failure)
        rows = self._execute(sql, params)
        failure = self._injected(sql, after=True)
        if failure is not None:
            self._raise(failure)
        return rows

    def _execute(self, sql, params):
        if "INFORMATION_SCHEMA.SCHEMATA" in sql:
            name = params["name"]
            return [{"SCHEMA_NAME": name}] if name in self.schemas else []
        created = _CREATE_DB_RE.search(sql)
        if created:
            self.schemas.add(created.group(1))
        dropped = _DROP_DB_RE.search(sql)
        if dropped:
            self.schemas.discard(dropped.group(1))
        return []


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def vault():
    return InMemorySecretStore()


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def config():
    return ProvisioConfig()


@pytest.fixture
def retry_delays(monkeypatch):
    """Record backoff delays without sleeping."""
    delays = []

    async def fake_schedule_retry(attempt, base=0.5, cap=8.0, jitter=0.1):
        delay = retry.compute_backoff(attempt, base=base, cap=cap, jitter=jitter)
        delays.append(delay)
        return delay

    monkeypatch.setattr(retry, "schedule_retry", fake_schedule_retry)
    return delays


@pytest.fixture
def executor(host, vault, config, retry_delays):
    return StepExecutor(host, vault, config)


@pytest.fixture
def orchestrator(executor, repo):
    return Orchestrator(executor, repo)

