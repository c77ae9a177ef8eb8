"""
Coverage sessions.

A session owns the registry of the current process, instruments matching
modules (those already imported and those imported later, through an import
hook), and makes sure every process that inherits the instrumented code
writes its own dump when it leaves:

 - normal interpreter exit: atexit
 - SIGTERM: a handler on the main thread, chained to the previous one
 - os.fork: the child starts over with zeroed counters and a new process id
 - multiprocessing workers, which exit through os._exit: a multiprocessing
   finalizer registered after the fork
 - spawn and forkserver children: the session configuration travels in the
   preparation data multiprocessing sends them, and unpickling it starts a
   session in the child before any workload module is imported

Example Usage:
    config = CoverageConfig(include=["mypkg"])
    with CoverageSession(config) as session:
        run_workload()
    report = session.report()
"""

import atexit
import dataclasses
import importlib.abc
import logging
import multiprocessing
import multiprocessing.spawn
import multiprocessing.util
import os
import signal
import sys
import threading
from pathlib import Path
from types import ModuleType
from typing import Any, Callable, Iterable, List, Optional, Set, Tuple

from . import native
from .aggregate import CoverageReport
from .config import CoverageConfig
from .discovery import discover
from .errors import (
    FlushFailed,
    ReplacementFailed,
    SourceUnavailable,
    UnsupportedNodeKind,
)
from .instrument import Instrumenter
from .registry import ProbeRegistry, activate, install_probe
from .replace import ReplacementLedger

logger = logging.getLogger(__name__)

PROCESS_START_ENV = "PROBECOV_PROCESS_START"

# run before multiprocessing's own finalizers with priority 0
_FINALIZER_PRIORITY = 10

_current: Optional["CoverageSession"] = None
_original_preparation_data: Optional[Callable] = None


def current() -> Optional["CoverageSession"]:
    return _current


def _after_fork_in_child() -> None:
    session = _current
    if session is not None and session.started:
        session._reset_after_fork()


if hasattr(os, "register_at_fork"):
    os.register_at_fork(after_in_child=_after_fork_in_child)


class _SpawnedStartup:
    """session configuration shipped to spawned children; unpickling it starts a session"""

    def __init__(self, config: CoverageConfig):
        self.config = config

    def __getstate__(self):
        state = dataclasses.asdict(self.config)
        state["dump_dir"] = os.path.abspath(state["dump_dir"])
        return state

    def __setstate__(self, state):
        self.config = CoverageConfig(**state)
        process_startup(self.config)


def _patch_spawn() -> None:
    global _original_preparation_data
    if _original_preparation_data is not None:
        return
    _original_preparation_data = original = multiprocessing.spawn.get_preparation_data

    def get_preparation_data(name):
        data = original(name)
        session = _current
        if session is not None and session.started:
            data["probecov"] = _SpawnedStartup(session.config)
        return data

    multiprocessing.spawn.get_preparation_data = get_preparation_data


class _InstrumentingLoader(importlib.abc.Loader):
    """runs the wrapped loader, then instruments the fresh module"""

    def __init__(self, loader, session: "CoverageSession"):
        self._loader = loader
        self._session = session

    def create_module(self, spec):
        return self._loader.create_module(spec)

    def exec_module(self, module: ModuleType) -> None:
        self._loader.exec_module(module)
        if self._session.started:
            self._session.instrument_module(module)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._loader, name)


class _ImportHook(importlib.abc.MetaPathFinder):
    """meta path finder that wraps the loader of matching modules"""

    def __init__(self, session: "CoverageSession"):
        self._session = session

    def find_spec(self, fullname, path, target=None):
        if not self._session.config.matches_module(fullname):
            return None
        for finder in sys.meta_path:
            if finder is self:
                continue
            find_spec = getattr(finder, "find_spec", None)
            if find_spec is None:
                continue
            spec = find_spec(fullname, path, target)
            if spec is not None:
                break
        else:
            return None
        if spec.loader is None or not hasattr(spec.loader, "exec_module"):
            return spec
        spec.loader = _InstrumentingLoader(spec.loader, self._session)
        return spec


class CoverageSession:
    """
    instrumentation and flushing for one run

    errors collects (definition name, exception) for every definition that
    could not be instrumented and every flush that failed; warnings collects
    unreadable dispatch tables and failed restores
    """

    def __init__(self, config: Optional[CoverageConfig] = None):
        self.config = config or CoverageConfig()
        self.registry: Optional[ProbeRegistry] = None
        self.instrumenter: Optional[Instrumenter] = None
        self.ledger = ReplacementLedger()
        self.errors: List[Tuple[str, Exception]] = []
        self.warnings: List[Exception] = []
        self.started = False
        self._modules: Set[str] = set()
        self._hook: Optional[_ImportHook] = None
        self._previous_registry: Optional[ProbeRegistry] = None
        self._previous_session: Optional[CoverageSession] = None
        self._previous_sigterm: Any = None
        self._sigterm_installed = False

    @property
    def dump_dir(self) -> Path:
        return Path(self.config.dump_dir)

    @property
    def instrumented(self) -> int:
        return len(self.ledger)

    def __enter__(self) -> "CoverageSession":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.stop()

    def start(self) -> "CoverageSession":
        global _current
        if self.started:
            return self
        install_probe()
        self.ledger = ReplacementLedger()
        self._modules = set()
        self.registry = ProbeRegistry()
        self.instrumenter = Instrumenter(self.registry)
        self._previous_registry = activate(self.registry)
        self._previous_session, _current = _current, self
        self.started = True
        self.registry.mark_started(self.dump_dir)
        logger.debug("session %s started, dumps go to %s", self.registry.process_id, self.dump_dir)

        for name, module in list(sys.modules.items()):
            if isinstance(module, ModuleType) and self.config.matches_module(name):
                self.instrument_module(module)

        self._hook = _ImportHook(self)
        sys.meta_path.insert(0, self._hook)
        atexit.register(self.flush)
        self._install_sigterm()
        multiprocessing.util.register_after_fork(self, CoverageSession._register_worker_finalizer)
        _patch_spawn()
        return self

    def stop(self) -> None:
        """flush, then undo every replacement and hook"""
        global _current
        if not self.started:
            return
        try:
            self.flush()
        finally:
            self.started = False
            if self._hook in sys.meta_path:
                sys.meta_path.remove(self._hook)
            self._hook = None
            atexit.unregister(self.flush)
            self._uninstall_sigterm()
            self.warnings.extend(self.ledger.restore_all())
            activate(self._previous_registry)
            if _current is self:
                _current = self._previous_session
            logger.debug("session %s stopped", self.registry.process_id)

    def instrument_module(self, module: ModuleType) -> int:
        """instrument every definition of a module, returning how many were replaced"""
        name = getattr(module, "__name__", None)
        if name is None or name in self._modules or getattr(module, "__file__", None) is None:
            return 0
        self._modules.add(name)
        result = discover(module, self.config)
        self.warnings.extend(result.warnings)

        replaced = 0
        for record in result:
            if record.target in self.ledger:
                continue
            try:
                code = self.instrumenter.instrument(record.target)
                self.ledger.replace(record.name, record.scope, record.target, code)
            except (UnsupportedNodeKind, SourceUnavailable, ReplacementFailed) as e:
                logger.warning("not instrumenting %s: %s", record.name, e)
                self.errors.append((record.name, e))
                continue
            except (SyntaxError, ValueError) as e:
                logger.warning("rewritten %s does not compile: %s", record.name, e)
                self.errors.append((record.name, e))
                continue
            replaced += 1
        logger.info("instrumented %d of %d definitions in %s", replaced, len(result), name)
        return replaced

    def flush(self) -> Optional[Path]:
        """write this process's dump; a failure is logged and recorded, not raised"""
        if self.registry is None:
            return None
        try:
            return self.registry.dump(self.dump_dir)
        except FlushFailed as e:
            logger.error("%s", e)
            self.errors.append((self.registry.process_id, e))
            return None

    def run(self, func: Callable, *args, **kwargs) -> Any:
        """call func inside the session, starting and stopping it if needed"""
        if self.started:
            return func(*args, **kwargs)
        with self:
            return func(*args, **kwargs)

    def run_parallel(self, func: Callable, items: Iterable) -> List[Any]:
        """
        map func over items in config.parallel forked workers

        the workers inherit the instrumented code and each writes its own dump
        before exiting; this returns once all of them are gone
        """
        if not self.started:
            with self:
                return self.run_parallel(func, items)
        context = multiprocessing.get_context("fork")
        pool = context.Pool(self.config.parallel)
        try:
            results = pool.map(func, items)
            pool.close()
        except BaseException:
            pool.terminate()
            raise
        finally:
            pool.join()
        return results

    def report(self) -> CoverageReport:
        """merge every dump of the dump directory, plus native records if enabled"""
        records: List[native.NativeCoverageRecord] = []
        if self.config.native:
            records = native.read_many(self.config.native_paths)
        report = CoverageReport.from_directory(self.dump_dir, records)
        if report.missing:
            logger.warning("%d process(es) left no dump", len(report.missing))
        return report

    def _reset_after_fork(self) -> None:
        self.registry = self.registry.fresh_copy()
        self.instrumenter.registry = self.registry
        activate(self.registry)
        self.registry.mark_started(self.dump_dir)

    def _register_worker_finalizer(self) -> None:
        if self.started:
            multiprocessing.util.Finalize(None, self.flush, exitpriority=_FINALIZER_PRIORITY)

    def _install_sigterm(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("not on the main thread, SIGTERM will not flush")
            return
        self._previous_sigterm = signal.getsignal(signal.SIGTERM)
        signal.signal(signal.SIGTERM, self._on_sigterm)
        self._sigterm_installed = True

    def _uninstall_sigterm(self) -> None:
        if not self._sigterm_installed:
            return
        if threading.current_thread() is threading.main_thread():
            previous = self._previous_sigterm
            signal.signal(signal.SIGTERM, signal.SIG_DFL if previous is None else previous)
            self._sigterm_installed = False

    def _on_sigterm(self, signum, frame) -> None:
        self.flush()
        previous = self._previous_sigterm
        if callable(previous):
            previous(signum, frame)
        elif previous != signal.SIG_IGN:
            signal.signal(signum, signal.SIG_DFL)
            os.kill(os.getpid(), signum)


def process_startup(config: Optional[CoverageConfig] = None) -> Optional[CoverageSession]:
    """
    start a session in a freshly spawned interpreter

    without a config, the JSON file named by PROBECOV_PROCESS_START is used, so
    a sitecustomize calling this joins interpreters started by `probecov run`;
    multiprocessing children pass the parent's config. An already running
    session is returned as is.
    """
    if _current is not None:
        return _current
    if config is None:
        path = os.environ.get(PROCESS_START_ENV)
        if not path:
            return None
        config = CoverageConfig.from_file(path)
    session = CoverageSession(config).start()
    logger.debug("session %s joined from a new interpreter", session.registry.process_id)
    return session
