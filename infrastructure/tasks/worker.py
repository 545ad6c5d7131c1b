"""Convenience entry point for running the Celery worker.

Most deployments will invoke the standard Celery CLI; this script serves the
settlement and reconciliation queues with an embedded beat scheduler for local runs.
"""
from __future__ import annotations

from .config.celery import celery_app


def main() -> None:
    celery_app.worker_main(
        argv=[
            "worker",
            "--hostname=worker@%h",
            "--queues=settlement,reconciliation,default",
            "--beat",
            "--loglevel=INFO",
        ]
    )


if __name__ == "__main__":
    main()
