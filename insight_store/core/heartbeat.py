"""
Heartbeat: periodic snapshot and compaction for a running knowledge store.
"""

import time
import threading
from typing import Callable, Dict, Optional

from .config import (
    COMPACTION_INTERVAL_SEC,
    SNAPSHOT_INTERVAL_SEC,
    is_heartbeat_enabled,
    validate_heartbeat_config,
)
from ..util.logging import logger


tasks: Dict[str, Dict] = {}  # task_name -> {func, interval, last_run}
running = False
shutdown_event = None
_thread: Optional[threading.Thread] = None


def register_task(name: str, interval_sec: int, func: Callable):
    """
    Register a task to be executed periodically.

    Args:
        name: Unique task identifier
        interval_sec: How often to run this task in seconds
        func: Function to call
    """
    if not callable(func):
        raise ValueError(f"Task function must be callable: {func}")

    if interval_sec < 1:
        raise ValueError(f"Interval must be >= 1 second: {interval_sec}")

    issues = validate_heartbeat_config()
    if issues:
        raise ValueError(f"Heartbeat configuration invalid: {issues}")

    tasks[name] = {
        "func": func,
        "interval": interval_sec,
        "last_run": None
    }

    logger.info(f"Registered heartbeat task '{name}' (every {interval_sec}s)")


def unregister_task(name: str):
    """Remove a task from the registry."""
    if name in tasks:
        del tasks[name]
        logger.info(f"Unregistered heartbeat task '{name}'")


def list_tasks():
    """Return list of registered task names."""
    return list(tasks.keys())


def register_store_tasks(store, snapshot_interval: int = None, compaction_interval: int = None):
    """Register the periodic snapshot and compaction tasks for ``store``."""
    if store.persistence is not None:
        register_task("snapshot", snapshot_interval or SNAPSHOT_INTERVAL_SEC, store.snapshot)
    register_task("compact", compaction_interval or COMPACTION_INTERVAL_SEC, store.maybe_compact)


def start(poll_interval: float = 0.5):
    """
    Run the heartbeat loop in the calling thread until ``stop`` is called.

    Checks task intervals with time.monotonic() and runs tasks when due.
    A failing task is logged and the loop continues.
    """
    global running, shutdown_event

    if not is_heartbeat_enabled():
        logger.info("Heartbeat disabled (HEARTBEAT_ENABLED=false). Skipping start.")
        return

    if running:
        raise RuntimeError("Heartbeat already running")

    issues = validate_heartbeat_config()
    if issues:
        raise ValueError(f"Heartbeat configuration invalid: {issues}")

    running = True
    shutdown_event = threading.Event()

    logger.info(f"Starting heartbeat loop with tasks: {list(tasks.keys())}")

    try:
        while running and not shutdown_event.is_set():
            for name, task_info in list(tasks.items()):
                if should_run_task(name, task_info):
                    try:
                        run_task(name, task_info)
                    except RuntimeError as e:
                        # Error isolation - log error but continue loop
                        logger.error(f"Heartbeat task '{name}' failed: {e}")

            shutdown_event.wait(poll_interval)
    finally:
        running = False
        logger.info("Heartbeat loop stopped")


def start_background(poll_interval: float = 0.5) -> Optional[threading.Thread]:
    """Run the heartbeat loop on a daemon thread. Returns the thread, if started."""
    global _thread

    if not is_heartbeat_enabled():
        logger.info("Heartbeat disabled (HEARTBEAT_ENABLED=false). Skipping start.")
        return None

    if _thread is not None and _thread.is_alive():
        raise RuntimeError("Heartbeat already running")

    _thread = threading.Thread(target=start, args=(poll_interval,), name="insight-heartbeat", daemon=True)
    _thread.start()
    return _thread


def stop(timeout: float = 5.0):
    """Stop the heartbeat loop and wait for a background thread to exit."""
    global running, _thread

    if not running:
        logger.info("Heartbeat not running")
        return

    logger.info("Stopping heartbeat loop...")
    running = False

    if shutdown_event:
        shutdown_event.set()

    if _thread is not None and _thread is not threading.current_thread():
        _thread.join(timeout)
        _thread = None


def should_run_task(name: str, task_info: Dict) -> bool:
    """Check if a task should run this cycle."""
    if task_info["last_run"] is None:
        return True  # Run immediately if never run

    elapsed = time.monotonic() - task_info["last_run"]
    return elapsed >= task_info["interval"]


def run_task(name: str, task_info: Dict):
    """Execute a task and record timing."""
    start_time = time.monotonic()

    try:
        task_info["func"]()
    except Exception as e:
        end_time = time.monotonic()
        # Failed tasks wait a full interval before retrying
        task_info["last_run"] = end_time
        logger.log_heartbeat_task(name, start_time, end_time, "failed", {"error": str(e)[:200]})
        raise RuntimeError(f"Task '{name}' failed after {end_time - start_time:.2f}s: {e}") from e

    end_time = time.monotonic()
    task_info["last_run"] = end_time
    logger.log_heartbeat_task(name, start_time, end_time)


def reset_task(name: str):
    """Reset a task's last_run time to force immediate execution."""
    if name in tasks:
        tasks[name]["last_run"] = None


def get_status():
    """Return current heartbeat status for monitoring."""
    if not is_heartbeat_enabled():
        return {"status": "disabled", "reason": "HEARTBEAT_ENABLED=false"}

    return {
        "status": "running" if running else "stopped",
        "tasks": {
            name: {
                "interval_sec": info["interval"],
                "last_run": info["last_run"],
                "next_run": info["last_run"] + info["interval"] if info["last_run"] else None
            }
            for name, info in tasks.items()
        }
    }
