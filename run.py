#!/usr/bin/env python3
"""
Policy Approval Workflow Entry Point

Starts the FastAPI server with the approval engine.
"""

import sys

from policy_approvals.api import run_server
from policy_approvals.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting Policy Approval Workflow Engine...")
    print(f"API available at: http://localhost:{settings.api_port}")
    print(f"Documentation at: http://localhost:{settings.api_port}/docs")
    if settings.escalation_scheduler_enabled:
        print(f"Escalation sweep every {settings.escalation_interval_minutes} minutes")
    print()

    try:
        run_server(host=settings.api_host, port=settings.api_port, debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Policy Approval Workflow Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
