#!/usr/bin/env python3
"""Unified entry point for the reminder core.

Starts the REST API, the MCP server and the embedding indexer worker as
subprocesses and stops all of them when any one exits or a signal arrives.
"""

import os
import signal
import subprocess
import sys
import time
from typing import Dict, List, Tuple

from config import settings
from logger_config import setup_logger

logger = setup_logger('launcher', 'launcher.log')

# (label, script, extra environment)
SERVICES: List[Tuple[str, str, Dict[str, str]]] = [
    ("API server", "api_server.py", {}),
    ("MCP server", "mcp_server.py", {"MCP_TRANSPORT": settings.MCP_TRANSPORT}),
    ("Indexer worker", "background_worker.py", {}),
]

processes: List[Tuple[str, subprocess.Popen]] = []
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    if shutdown_requested:
        logger.warning("Force shutdown requested")
        sys.exit(1)

    shutdown_requested = True
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_services()


def shutdown_services(exit_code: int = 0):
    """Terminate every child, killing those that outlive the grace period."""
    logger.info("Stopping all services...")
    for label, process in processes:
        if process.poll() is None:
            logger.info(f"Terminating {label} (PID: {process.pid})")
            process.terminate()

    for label, process in processes:
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Force killing {label} (PID: {process.pid})")
            process.kill()
            process.wait()

    logger.info("All services stopped")
    sys.exit(exit_code)


def start_service(label: str, script: str, extra_env: Dict[str, str], cwd: str) -> subprocess.Popen:
    logger.info(f"Starting {label}...")
    env = os.environ.copy()
    env.update(extra_env)
    return subprocess.Popen([sys.executable, script], cwd=cwd, env=env)


def main():
    """Start all services and supervise them."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("Reminder Core - Unified Startup")
    logger.info("=" * 60)

    current_dir = os.path.dirname(os.path.abspath(__file__))

    try:
        for label, script, extra_env in SERVICES:
            processes.append((label, start_service(label, script, extra_env, current_dir)))
            time.sleep(2)

        logger.info("=" * 60)
        logger.info("All services started successfully!")
        logger.info(f"  - API Server: http://{settings.API_HOST}:{settings.API_PORT}")
        logger.info(f"  - API Docs: http://{settings.API_HOST}:{settings.API_PORT}/docs")
        logger.info(f"  - MCP Server: http://{settings.MCP_HOST}:{settings.MCP_PORT}/sse")
        logger.info(f"  - Indexer Worker: {'Active' if settings.INDEXER_ENABLED else 'Disabled'}")
        logger.info("=" * 60)

        while not shutdown_requested:
            for label, process in processes:
                # a disabled worker exits cleanly on its own
                if process.poll() is not None and process.returncode != 0:
                    logger.error(f"{label} (PID: {process.pid}) has stopped unexpectedly!")
                    shutdown_services(exit_code=1)
            time.sleep(5)

    except OSError as e:
        logger.error(f"Error starting services: {e}")
        shutdown_services(exit_code=1)


if __name__ == "__main__":
    main()
