"""
Configuration — loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
ARTIFACTS_DIR = Path(os.getenv("ARTIFACTS_DIR", str(PROJECT_ROOT / "artifacts")))

# Postgres
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost:5432/agent_builder")

# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1")
OPENAI_MAX_TOKENS = int(os.getenv("OPENAI_MAX_TOKENS", "4096"))

# Temporal
TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_TASK_QUEUE = os.getenv("TEMPORAL_TASK_QUEUE", "agent-builder-queue")
TEMPORAL_NAMESPACE = os.getenv("TEMPORAL_NAMESPACE", "default")

# API base URL the worker relays notifications to
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")

# Observer connections
CONNECTION_TTL_SEC = int(os.getenv("CONNECTION_TTL_SEC", str(24 * 60 * 60)))
CONNECTION_SWEEP_INTERVAL_SEC = int(os.getenv("CONNECTION_SWEEP_INTERVAL_SEC", "3600"))

# Dispatch
DISPATCH_DEDUP_WINDOW_SEC = int(os.getenv("DISPATCH_DEDUP_WINDOW_SEC", "60"))
DISPATCH_STEP_TIMEOUT_SEC = 60
DISPATCH_STEP_MAX_ATTEMPTS = 5

# Agents whose output waits for human sign-off (comma-separated agent names)
APPROVAL_AGENTS = frozenset(
    name.strip()
    for name in os.getenv("APPROVAL_AGENTS", "ProductManagerAgent").split(",")
    if name.strip()
)

# Execution time limit per agent (seconds)
AGENT_TIMEOUTS = {
    "ProductManagerAgent": 300,
    "BackendEngineerAgent": 600,
    "FrontendEngineerAgent": 600,
    "DevOpsEngineerAgent": 300,
}
DEFAULT_AGENT_TIMEOUT = 300

# Attempts per agent before the task is marked failed
AGENT_RETRY_LIMITS = {
    "ProductManagerAgent": 2,
    "BackendEngineerAgent": 3,
    "FrontendEngineerAgent": 3,
    "DevOpsEngineerAgent": 2,
}
DEFAULT_AGENT_RETRY_LIMIT = 2

# Max characters of each earlier artifact passed to the next agent
MAX_ARTIFACT_CONTEXT_CHARS = 8_000
