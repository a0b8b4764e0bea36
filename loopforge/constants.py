"""Constants for loopforge project documents and loop timing."""

from pathlib import Path

# Documents the agent reads and maintains inside the project directory
TRACKING_DOCUMENT = "IMPLEMENTATION_PLAN.md"
PROJECT_CONTEXT_DOCUMENT = "PROJECT_CONTEXT.md"
SPECS_DIR = "specs"
DEFAULT_PROMPT_DOCUMENT = "PROMPT_build.md"
REVIEW_PROMPT_DOCUMENT = "PROMPT_review.md"
CONTINUATION_PROMPT_DOCUMENT = "PROMPT_continue.md"
E2E_FIX_PROMPT_DOCUMENT = "PROMPT_e2e_fix.md"
REVIEW_DEBUG_OUTPUT = ".review-debug-output.txt"
E2E_SCREENSHOTS_DIR = ".e2e-screenshots"

# Artifacts that must exist before a review pass may run
REQUIRED_REVIEW_ARTIFACTS = (TRACKING_DOCUMENT,)

# Status block marker emitted by the agent
STATUS_MARKER = "RALPH_STATUS:"

# Environment passed to every spawned agent process
ENV_LOOP_MODE = "RALPH_MODE"
ENV_SESSION_ID = "RALPH_SESSION_ID"

DEFAULT_AGENT_CLI = "claude"
DEFAULT_MODEL = "opus"

# Timing defaults (seconds)
RESTART_DELAY_SECONDS = 2.0
CONTINUATION_DELAY_SECONDS = 3.0
STOP_GRACE_SECONDS = 5.0
REVIEW_TIMEOUT_SECONDS = 600.0
PUSH_TIMEOUT_SECONDS = 30.0

READ_CHUNK_SIZE = 4096
BANNER_RULE = "━" * 40


def get_tracking_document(project_path: Path) -> Path:
    """Get the tracking document path."""
    return Path(project_path) / TRACKING_DOCUMENT


def get_prompt_document(project_path: Path, prompt_file: str) -> Path:
    """Get a prompt document path."""
    return Path(project_path) / prompt_file
