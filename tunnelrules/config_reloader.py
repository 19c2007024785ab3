"""Keep restriction rules in sync with a YAML file on disk."""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .restrictions import RestrictionsRules

logger = logging.getLogger(__name__)

_ACCESS_EVENTS = frozenset({"opened", "closed", "closed_no_write"})


class _ConfigEventHandler(FileSystemEventHandler):
    def __init__(self, reloader: RestrictionsRulesReloader) -> None:
        super().__init__()
        self._reloader = reloader

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._reloader._handle_fs_event(event)


class RestrictionsRulesReloader:
    """Hold the current restriction rules and reload them when their file changes.

    Without a config path the rules are static and never reloaded.
    """

    def __init__(self, restrictions_rules: RestrictionsRules, config_path=None, *, rewatch_interval: float = 10.0):
        self._rules = restrictions_rules
        self._rules_lock = threading.Lock()
        self._rewatch_interval = rewatch_interval
        self._stopped = threading.Event()
        self._watch_lock = threading.Lock()
        self._observer = None
        self._watch = None
        self._handler = None
        self._config_path: Path | None = None

        if config_path is None:
            return

        path = Path(os.path.normpath(Path(config_path).absolute()))
        if not path.exists():
            raise FileNotFoundError(f"Cannot watch restriction config file {str(path)!r}: it does not exist")
        self._config_path = path

        logger.info("Starting to watch restriction config file for changes to reload them")
        self._handler = _ConfigEventHandler(self)
        observer = Observer()
        try:
            self._watch = observer.schedule(self._handler, str(path.parent), recursive=False)
            observer.start()
        except OSError as err:
            raise OSError(f"Cannot create restriction config watcher for {str(path)!r}: {err}") from err
        self._observer = observer

    def __enter__(self) -> RestrictionsRulesReloader:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def restrictions_rules(self) -> RestrictionsRules:
        """Return the rules currently in force."""
        with self._rules_lock:
            return self._rules

    def reload_restrictions_config(self) -> None:
        """Re-read the config file; on failure the previous rules are kept."""
        if self._config_path is None:
            return
        try:
            rules = RestrictionsRules.from_config_file(self._config_path)
        except Exception as err:  # any failure keeps the old rules in force
            logger.error("Cannot reload restrictions config file, keeping the old one. Error: %r", err)
            return
        logger.info("Restrictions config file has been reloaded")
        with self._rules_lock:
            self._rules = rules

    def close(self) -> None:
        """Stop watching the config file. Safe to call more than once."""
        self._stopped.set()
        with self._watch_lock:
            observer, self._observer = self._observer, None
        if observer is not None:
            observer.stop()
            observer.join()

    def _matches(self, raw_path) -> bool:
        if self._config_path is None or raw_path is None or raw_path == "":
            return False
        parts = Path(os.path.normpath(os.fsdecode(raw_path))).parts
        wanted = self._config_path.parts
        return len(parts) >= len(wanted) and parts[-len(wanted):] == wanted

    def _handle_fs_event(self, event: FileSystemEvent) -> None:
        if self._config_path is None or self._stopped.is_set():
            return
        kind = event.event_type
        if kind in _ACCESS_EVENTS:
            return
        logger.debug("Received event: %r", event)

        if kind in ("created", "modified"):
            if self._matches(event.src_path):
                self.reload_restrictions_config()
        elif kind == "deleted":
            if self._matches(event.src_path):
                self._start_rewatch()
        elif kind == "moved":
            if self._matches(getattr(event, "dest_path", None)):
                self.reload_restrictions_config()
            elif self._matches(event.src_path):
                self._start_rewatch()
        else:
            logger.debug("Ignoring event %r", event)

    def _start_rewatch(self) -> None:
        logger.warning("Restriction config file has been removed, trying to re-set a watch for it")
        threading.Thread(target=self._rewatch, name="restrictions-rewatch", daemon=True).start()

    def _rewatch(self) -> None:
        path = self._config_path
        while not path.exists():
            logger.warning(
                "Restrictions config file %r does not exist anymore, waiting for it to be created", str(path)
            )
            if self._stopped.wait(self._rewatch_interval):
                return

        with self._watch_lock:
            observer = self._observer
            if observer is None or self._stopped.is_set():
                return
            if self._watch is not None:
                try:
                    observer.unschedule(self._watch)
                except (KeyError, OSError):
                    pass
            try:
                self._watch = observer.schedule(self._handler, str(path.parent), recursive=False)
            except OSError as err:
                self._watch = None
                logger.error("Cannot re-set a watch for Restriction config file %r: %r", str(path), err)
                logger.error("Restriction config file will not be auto-reloaded anymore")
                return

        self.reload_restrictions_config()