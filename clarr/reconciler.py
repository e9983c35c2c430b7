#!/usr/bin/env python3
"""
reconciler.py — Keep Radarr/Sonarr monitored flags in line with the disk

When Jellyfin reports a deletion, the matching catalog manager is rescanned
and every item it now sees without files is unmonitored, so it does not go
and download the content again.

Each invocation is self-contained; the dispatcher runs them on a worker pool
so the webhook response never waits for Radarr/Sonarr.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from .servarr_client import ServarrClient, ServarrError
from .webhook import DeletionEvent, MediaKind

LOG = logging.getLogger("clarr.reconciler")


class ReconcileState(str, Enum):
    START = "start"
    RESCAN_REQUESTED = "rescan_requested"
    RESCAN_ACKNOWLEDGED = "rescan_acknowledged"
    MISSING_QUERIED = "missing_queried"
    UNMONITOR_APPLIED = "unmonitor_applied"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ItemFailure:
    item_id: int
    title: str
    message: str


@dataclass
class ReconcileReport:
    kind: MediaKind
    title: str = ""
    catalog: str = ""
    state: ReconcileState = ReconcileState.START
    candidates: int = 0
    unmonitored: List[int] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == ReconcileState.DONE


class Reconciler:
    def __init__(self, radarr: ServarrClient, sonarr: ServarrClient):
        self.radarr = radarr
        self.sonarr = sonarr

    def client_for(self, kind: MediaKind) -> Optional[ServarrClient]:
        if kind == MediaKind.MOVIE:
            return self.radarr
        if kind in (MediaKind.EPISODE, MediaKind.SERIES):
            return self.sonarr
        return None

    def handle(self, event: DeletionEvent) -> ReconcileReport:
        report = ReconcileReport(kind=event.kind, title=event.title)
        client = self.client_for(event.kind)
        if client is None:
            LOG.warning(f"Unknown item type for '{event.title}' (event {event.event_name}), nothing to do")
            report.state = ReconcileState.DONE
            return report

        report.catalog = client.name
        if event.kind == MediaKind.MOVIE:
            LOG.info(f"Processing deleted movie '{event.title}'")
        else:
            LOG.info(f"Processing deleted {event.kind.value} '{event.title}' (series: {event.series_name})")
        return self.reconcile(client, report)

    def reconcile(self, client: ServarrClient, report: ReconcileReport) -> ReconcileReport:
        """Rescan, list unreferenced items, unmonitor them one by one."""
        report.state = ReconcileState.RESCAN_REQUESTED
        try:
            client.rescan_library()
        except ServarrError as e:
            LOG.error(f"[{client.name}] rescan failed for '{report.title}': {e}")
            report.state = ReconcileState.FAILED
            report.error = f"rescan failed: {e}"
            return report
        report.state = ReconcileState.RESCAN_ACKNOWLEDGED

        try:
            missing = client.list_unreferenced()
        except ServarrError as e:
            LOG.error(f"[{client.name}] listing unreferenced items failed: {e}")
            report.state = ReconcileState.FAILED
            report.error = f"listing unreferenced items failed: {e}"
            return report
        report.state = ReconcileState.MISSING_QUERIED
        report.candidates = len(missing)

        for item in missing:
            try:
                client.set_monitored(item.id, False)
            except ServarrError as e:
                LOG.error(f"[{client.name}] unmonitor failed for '{item.title}' (id {item.id}): {e}")
                report.failures.append(ItemFailure(item_id=item.id, title=item.title, message=str(e)))
                continue
            report.unmonitored.append(item.id)
            LOG.info(f"[{client.name}] unmonitored '{item.title}' (id {item.id})")
        report.state = ReconcileState.UNMONITOR_APPLIED

        LOG.info(f"[{client.name}] reconcile done: {len(report.unmonitored)} unmonitored, "
                 f"{len(report.failures)} failed")
        report.state = ReconcileState.DONE
        return report

    def rescan_all(self):
        """Manual full rescan of both catalogs; one failing does not stop the other."""
        for client in (self.radarr, self.sonarr):
            try:
                client.rescan_library(wait=False)
            except ServarrError as e:
                LOG.error(f"[{client.name}] rescan failed: {e}")
        LOG.info("Manual rescan done")


class ReconcileDispatcher:
    """Fire-and-forget worker pool for reconciler invocations."""

    def __init__(self, reconciler: Reconciler, max_workers: int = 4):
        self.reconciler = reconciler
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reconcile")

    def _submit(self, fn, *args) -> Future:
        future = self._executor.submit(fn, *args)
        future.add_done_callback(self._log_crash)
        return future

    @staticmethod
    def _log_crash(future: Future):
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            LOG.error(f"Reconcile task crashed: {exc!r}")

    def submit_event(self, event: DeletionEvent) -> Future:
        return self._submit(self.reconciler.handle, event)

    def submit_rescan(self) -> Future:
        return self._submit(self.reconciler.rescan_all)

    def shutdown(self, wait: bool = False):
        self._executor.shutdown(wait=wait, cancel_futures=True)
