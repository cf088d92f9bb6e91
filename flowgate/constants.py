"""Shared defaults for flowgate."""

DEFAULT_APPROVAL_TIMEOUT_HOURS = 24
DEFAULT_MAX_STEPS = 100
DEFAULT_STEP_TIMEOUT_SECONDS = 30.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0
DEFAULT_LLM_MAX_TOKENS = 1024
DEFAULT_SEARCH_MAX_RESULTS = 10
EDITOR_HISTORY_LIMIT = 50

DEFAULT_TOPIC = "flowgate.executions"

# Edge handles
HANDLE_OUTPUT = "output"
HANDLE_INPUT = "input"
HANDLE_TRUE = "true"
HANDLE_FALSE = "false"
HANDLE_APPROVED = "approved"
HANDLE_REJECTED = "rejected"
HANDLE_EXPIRED = "expired"

CONDITION_HANDLES = (HANDLE_TRUE, HANDLE_FALSE)
APPROVAL_HANDLES = (HANDLE_APPROVED, HANDLE_REJECTED, HANDLE_EXPIRED)
