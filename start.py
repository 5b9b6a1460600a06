#!/usr/bin/env python3
"""
coursegen process launcher.

SERVICE_TYPE picks the process to exec:
  - web (default): admin API under gunicorn + uvicorn workers
  - worker: stage worker for WORKER_QUEUES (all queues by default)
  - structure-worker: stage worker for course-structure only
  - quiz-worker: stage worker for quiz, email and sitemap

Split workers let slow outline/article generation scale apart from quizzes.
"""

import os
import sys

WORKER_MODULE = [sys.executable, "-m", "coursegen.jobs.run_worker"]


def web_command(port: str):
    return [
        "gunicorn", "coursegen.api.main:app",
        # One process: the DEV_MODE in-process worker must not run twice
        "--workers", "1",
        "--worker-class", "uvicorn.workers.UvicornWorker",
        "--bind", f"0.0.0.0:{port}",
        "--timeout", "300",
        "--graceful-timeout", "60",
    ]


def worker_command(*queues: str):
    if not queues:
        return list(WORKER_MODULE)
    return WORKER_MODULE + ["--queues", *queues]


def build_command(service_type: str, port: str):
    commands = {
        "web": lambda: web_command(port),
        "worker": worker_command,
        "structure-worker": lambda: worker_command("course-structure"),
        "quiz-worker": lambda: worker_command("quiz", "email", "sitemap"),
    }
    if service_type not in commands:
        print(f"ERROR: Unknown SERVICE_TYPE: {service_type}")
        print(f"Valid values: {', '.join(commands)}")
        sys.exit(1)
    return commands[service_type]()


if __name__ == "__main__":
    service_type = os.environ.get("SERVICE_TYPE", "web")
    cmd = build_command(service_type, os.environ.get("PORT", "8080"))

    print("=" * 50)
    print(f"coursegen service: {service_type}")
    print(f"Running: {' '.join(cmd)}")
    print("=" * 50)

    # Replace this process with the service
    os.execvp(cmd[0], cmd)
