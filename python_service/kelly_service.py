#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import multiprocessing as mp
import os
import pathlib
import queue as queue_mod
import secrets
import signal
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Iterator, Optional
from urllib.parse import parse_qs, urlparse

REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from kelly_allocator import (
    DEFAULT_CONFIG,
    TERMINAL_STATUSES,
    format_progress_line,
    prepare_config,
    run_kelly_optimization,
)


HEARTBEAT_S = 10.0

# Subset of the optimizer result that crosses the process boundary.
RESULT_FIELDS = (
    "status",
    "iterations_completed",
    "diverged_at",
    "final_expected_log_return",
    "report",
    "error",
    "log",
)


class RunConflictError(RuntimeError):
    pass


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _to_jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    if getattr(value, "ndim", 0) > 0:
        return _to_jsonable(value.tolist())
    if hasattr(value, "item") and callable(value.item):
        value = value.item()
    if isinstance(value, float) and value != value:
        return None
    return value


def _optimization_worker(config: dict[str, Any], messages: mp.Queue) -> None:
    def forward(event: str, payload: dict[str, Any]) -> None:
        messages.put(("progress", event, _to_jsonable(payload)))

    result = run_kelly_optimization(config=config, verbose=False, progress_callback=forward)
    messages.put(("result", {name: _to_jsonable(result[name]) for name in RESULT_FIELDS}))


@dataclass
class OptimizationRun:
    run_id: str
    config: dict[str, Any]
    process: Optional[mp.Process] = None
    created_at: str = field(default_factory=_timestamp)
    finished_at: Optional[str] = None
    status: str = "running"
    iterations_completed: int = 0
    diverged_at: Optional[int] = None
    final_expected_log_return: Optional[float] = None
    report: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    log: list[str] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)
    condition: threading.Condition = field(default_factory=threading.Condition)

    def record_event(self, event: str, payload: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        payload = _to_jsonable(payload or {})
        with self.condition:
            if event == "iteration_progress" and payload.get("expected_log_return") is not None:
                self.iterations_completed = int(payload["iteration"]) + 1
                self.final_expected_log_return = payload["expected_log_return"]
                self.log.append(format_progress_line(payload["iteration"], payload["expected_log_return"]))
            item = {
                "seq": len(self.events) + 1,
                "event": event,
                "payload": payload,
                "timestamp": _timestamp(),
            }
            self.events.append(item)
            self.condition.notify_all()
            return item

    def finish(self, outcome: dict[str, Any]) -> None:
        with self.condition:
            status = outcome.get("status")
            self.status = status if status in TERMINAL_STATUSES else "failed"
            self.iterations_completed = outcome.get("iterations_completed", self.iterations_completed)
            self.diverged_at = outcome.get("diverged_at")
            self.final_expected_log_return = outcome.get(
                "final_expected_log_return", self.final_expected_log_return
            )
            self.report = outcome.get("report")
            self.error = outcome.get("error")
            if outcome.get("log"):
                self.log = list(outcome["log"])
            elif self.error:
                self.log.append(self.error)
            self.finished_at = _timestamp()
            self.record_event("service_run_finished", {"status": self.status, "error": self.error})

    def is_finished(self) -> bool:
        with self.condition:
            return self.finished_at is not None

    def follow(self, after_seq: int = 0, heartbeat_s: float = HEARTBEAT_S) -> Iterator[Optional[dict[str, Any]]]:
        # Yields None when nothing arrived within heartbeat_s; ends after the finish event.
        seq = max(0, int(after_seq))
        while True:
            with self.condition:
                self.condition.wait_for(
                    lambda: len(self.events) > seq or self.finished_at is not None,
                    timeout=heartbeat_s,
                )
                pending = self.events[seq:]
                finished = self.finished_at is not None
            for event in pending:
                seq = event["seq"]
                yield event
            if finished:
                return
            if not pending:
                yield None

    def snapshot(self) -> dict[str, Any]:
        with self.condition:
            return {
                "run_id": self.run_id,
                "status": self.status,
                "created_at": self.created_at,
                "finished_at": self.finished_at,
                "iterations_completed": self.iterations_completed,
                "diverged_at": self.diverged_at,
                "final_expected_log_return": self.final_expected_log_return,
                "report": self.report,
                "error": self.error,
                "latest_seq": len(self.events),
            }

    def log_view(self) -> dict[str, Any]:
        with self.condition:
            return {"run_id": self.run_id, "status": self.status, "lines": list(self.log)}


def _next_message(messages: mp.Queue, process: mp.Process) -> Optional[tuple]:
    while True:
        try:
            return messages.get(timeout=0.25)
        except queue_mod.Empty:
            if process.is_alive():
                continue
        # The worker may have exited right after its last put.
        try:
            return messages.get(timeout=0.5)
        except queue_mod.Empty:
            return None


def _relay_messages(run: OptimizationRun, messages: mp.Queue) -> None:
    process = run.process
    while not run.is_finished():
        message = _next_message(messages, process)
        if message is None:
            run.finish({"status": "failed", "error": f"Worker exited unexpectedly with code {process.exitcode}."})
        elif message[0] == "progress":
            run.record_event(message[1], message[2])
        else:
            run.finish(message[1])
    messages.close()
    process.join(timeout=1.0)


class RunSlot:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._run: Optional[OptimizationRun] = None

    @property
    def active_run_id(self) -> Optional[str]:
        with self._lock:
            run = self._run
        if run is None or run.is_finished():
            return None
        return run.run_id

    def start(self, config: dict[str, Any]) -> OptimizationRun:
        with self._lock:
            if self._run is not None and not self._run.is_finished():
                raise RunConflictError("A run is already active. Wait for it to finish before starting another.")
            messages: mp.Queue = mp.Queue()
            process = mp.Process(target=_optimization_worker, args=(config, messages), daemon=True)
            run = OptimizationRun(run_id=uuid.uuid4().hex, config=_to_jsonable(config), process=process)
            process.start()
            self._run = run

        run.record_event("service_run_started", {"pid": process.pid})
        threading.Thread(target=_relay_messages, args=(run, messages), daemon=True).start()
        return run

    def get(self, run_id: str) -> Optional[OptimizationRun]:
        with self._lock:
            if self._run is not None and self._run.run_id == run_id:
                return self._run
        return None

    def stop(self) -> None:
        with self._lock:
            run = self._run
        if run is not None and run.process is not None and run.process.is_alive():
            run.process.terminate()
            run.process.join(timeout=1.0)


def _read_json_body(handler: BaseHTTPRequestHandler) -> dict[str, Any]:
    length = int(handler.headers.get("Content-Length") or 0)
    if length <= 0:
        return {}
    try:
        payload = json.loads(handler.rfile.read(length))
    except ValueError as exc:
        raise ValueError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object.")
    return payload


def _parse_run_request(payload: dict[str, Any]) -> dict[str, Any]:
    raw_config = payload.get("config") or {}
    if not isinstance(raw_config, dict):
        raise ValueError("config must be a JSON object.")
    return prepare_config(raw_config)


def _format_sse_frame(event: dict[str, Any]) -> bytes:
    data = json.dumps(_to_jsonable(event), separators=(",", ":"), ensure_ascii=False)
    return f"id: {event['seq']}\nevent: {event['event']}\ndata: {data}\n\n".encode("utf-8")


def _build_handler(slot: RunSlot, token: str):
    class KellyRequestHandler(BaseHTTPRequestHandler):
        protocol_version = "HTTP/1.1"

        def log_message(self, fmt: str, *args: Any) -> None:  # pragma: no cover
            return

        def _reply(self, status: HTTPStatus, payload: dict[str, Any]) -> None:
            blob = json.dumps(_to_jsonable(payload), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
            self.send_response(int(status))
            self.send_header("Content-Type", "application/json; charset=utf-8")
            self.send_header("Content-Length", str(len(blob)))
            self.end_headers()
            self.wfile.write(blob)

        def _authorized(self) -> bool:
            if self.headers.get("X-Kelly-Token") == token:
                return True
            if self.headers.get("Authorization", "") == f"Bearer {token}":
                return True
            self._reply(HTTPStatus.UNAUTHORIZED, {"error": "Unauthorized."})
            return False

        def _stream(self, run: OptimizationRun, after_seq: int) -> None:
            # No Content-Length: the body ends when the connection closes.
            self.send_response(int(HTTPStatus.OK))
            self.send_header("Content-Type", "text/event-stream")
            self.send_header("Cache-Control", "no-cache")
            self.send_header("Connection", "close")
            self.end_headers()
            self.close_connection = True
            try:
                for event in run.follow(after_seq):
                    self.wfile.write(b": keepalive\n\n" if event is None else _format_sse_frame(event))
                    self.wfile.flush()
            except (BrokenPipeError, ConnectionResetError):
                return

        def do_GET(self) -> None:  # noqa: N802
            url = urlparse(self.path)
            parts = [part for part in url.path.split("/") if part]

            if parts == ["health"]:
                self._reply(HTTPStatus.OK, {"status": "ok", "active_run": slot.active_run_id})
                return
            if not self._authorized():
                return
            if parts == ["defaults"]:
                self._reply(HTTPStatus.OK, {"defaults": DEFAULT_CONFIG})
                return
            if len(parts) not in (2, 3) or parts[0] != "runs":
                self._reply(HTTPStatus.NOT_FOUND, {"error": "Not found."})
                return

            run = slot.get(parts[1])
            view = parts[2] if len(parts) == 3 else "snapshot"
            if run is None:
                self._reply(HTTPStatus.NOT_FOUND, {"error": "Run not found."})
            elif view == "snapshot":
                self._reply(HTTPStatus.OK, run.snapshot())
            elif view == "log":
                self._reply(HTTPStatus.OK, run.log_view())
            elif view == "stream":
                try:
                    after_seq = int(parse_qs(url.query).get("from", ["0"])[0])
                except ValueError:
                    after_seq = 0
                self._stream(run, after_seq)
            else:
                self._reply(HTTPStatus.NOT_FOUND, {"error": "Not found."})

        def do_POST(self) -> None:  # noqa: N802
            if urlparse(self.path).path != "/runs":
                self._reply(HTTPStatus.NOT_FOUND, {"error": "Not found."})
                return
            if not self._authorized():
                return
            try:
                config = _parse_run_request(_read_json_body(self))
            except ValueError as exc:
                self._reply(HTTPStatus.BAD_REQUEST, {"status": "invalid", "error": str(exc)})
                return
            try:
                run = slot.start(config)
            except RunConflictError as exc:
                self._reply(HTTPStatus.CONFLICT, {"error": str(exc), "active_run": slot.active_run_id})
                return
            self._reply(HTTPStatus.CREATED, {"run_id": run.run_id, "status": run.status})

    return KellyRequestHandler


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Local HTTP host for Kelly allocation runs")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=0)
    parser.add_argument("--token", default="", help="shared secret; generated when omitted")
    args = parser.parse_args(argv)

    token = args.token.strip() or secrets.token_urlsafe(24)
    slot = RunSlot()
    server = ThreadingHTTPServer((args.host, args.port), _build_handler(slot, token))
    server.daemon_threads = True

    bound_host, bound_port = server.server_address[:2]
    ready = {"event": "service_ready", "host": bound_host, "port": bound_port, "token": token, "pid": os.getpid()}
    print(json.dumps(ready, separators=(",", ":")), flush=True)

    signal.signal(signal.SIGTERM, signal.default_int_handler)
    try:
        server.serve_forever(poll_interval=0.3)
    except KeyboardInterrupt:
        pass
    finally:
        slot.stop()
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
