# agent/agent.py
from __future__ import annotations

import signal
import time
from pathlib import Path
from typing import Optional

from flowci.settings import Settings
from flowci.ui.console import get_console

from .api_client import APIClient, APIError
from .executor import execute_lease
from .models import Lease


class Agent:
    """flowci agent: claims queued invocations and runs them locally."""

    def __init__(
        self,
        api_url: str,
        agent_id: str,
        poll_interval: int = 5,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize agent.

        Args:
            api_url: Base URL of the API
            agent_id: Unique identifier for this agent instance
            poll_interval: Seconds to wait between polls when nothing is queued
            settings: Orchestrator settings (defaults to FLOWCI_* environment)
        """
        self.api_client = APIClient(api_url, agent_id)
        self.poll_interval = poll_interval
        self.settings = settings
        self.work_dir = Path(".flowci/agent_work")
        self.running = True

    def _signal_handler(self, signum, frame):
        get_console().print_info(f"\nReceived signal {signum}, shutting down after the current invocation...")
        self.running = False

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def poll_once(self) -> bool:
        """Claim and run at most one invocation. Returns True if one ran."""
        lease = self.api_client.claim_lease()
        if lease is None:
            return False
        get_console().print_lease_acquired(invocation_id=lease.invocation_id, branch=lease.branch)
        self._execute_lease(lease)
        return True

    def run(self) -> None:
        """Run the agent loop."""
        console = get_console()
        console.print_agent_started(
            agent_id=self.api_client.agent_id,
            api=self.api_client.base_url,
            poll_interval=self.poll_interval,
        )

        while self.running:
            try:
                if not self.poll_once():
                    time.sleep(self.poll_interval)
            except APIError as e:
                console.print_error(
                    "API error",
                    str(e),
                    suggestion="Check API connectivity and retry.",
                )
                time.sleep(self.poll_interval)

        console.print_info("Agent stopped.")

    def _execute_lease(self, lease: Lease) -> None:
        console = get_console()
        start_time = time.time()

        result = execute_lease(lease, self.work_dir, self.settings)

        try:
            self.api_client.complete_lease(lease.invocation_id, result.status, result.to_dict())
        except APIError as e:
            console.print_error(
                "Failed to send completion",
                f"Could not send completion status to API: {e}",
            )

        console.print_execution_complete(status=result.status, duration=time.time() - start_time)
        if result.error:
            console.print_error("Invocation failed", result.error)


def run_agent(api_url: str, agent_id: str, poll_interval: int = 5, settings: Optional[Settings] = None) -> None:
    """Run the flowci agent loop until SIGINT/SIGTERM."""
    agent = Agent(api_url, agent_id, poll_interval, settings)
    agent.install_signal_handlers()
    agent.run()
