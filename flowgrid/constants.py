"""Shared defaults for flowgrid."""

# A task entered this many times in one run is force-completed and every
# reasoning gateway is pushed onto its last (happy) flow.
MAX_TASK_ITERATIONS = 3

# Rolling flow summary
SUMMARY_LIMIT = 500
SUMMARY_TRIM_TO = 480

# Context limits for gateway routing prompts
ROUTING_CONTEXT_LIMIT = 2000
ROUTING_PROMPT_CONTEXT_LIMIT = 1500
LATEST_OUTPUT_LIMIT = 800

DEFAULT_MODEL = "openai:gpt-4o"

# Reserved keys in structured task output and scoped input
RAW_OUTPUT_KEY = "_raw"
MISSING_INPUTS_KEY = "_missingInputs"
CURRENT_TASK_KEY = "_currentTask"
FLOW_SUMMARY_KEY = "_flowSummary"
ORIGINAL_REQUEST_KEY = "originalRequest"
RESERVED_INPUT_KEYS = (
    CURRENT_TASK_KEY,
    FLOW_SUMMARY_KEY,
    ORIGINAL_REQUEST_KEY,
    MISSING_INPUTS_KEY,
)

ROUTE_VARIABLE_PREFIX = "_route_"

HUMAN_ROLE_KEYWORDS = ("human", "reviewer", "approver", "stakeholder", "client", "manager")

# Decision variables recognised in free-text worker output
KNOWN_DECISION_KEYS = (
    "validationStatus",
    "conceptQuality",
    "approvalStatus",
    "status",
    "briefValid",
    "isValid",
    "result",
    "decision",
    "quality",
    "processStatus",
    "conceptsReceived",
    "deliveryReady",
    "approvalProcessed",
)

# Values forced when the iteration guard trips
FORCED_DECISION_VARIABLES = {
    "validationStatus": "valid",
    "conceptQuality": "acceptable",
    "approvalStatus": "approved",
    "briefValid": "true",
    "isValid": "true",
    "status": "valid",
    "result": "approved",
}

# Worker retry policy
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY = 1.0
DEFAULT_RETRY_MAX_DELAY = 10.0
TRANSIENT_STATUS_CODES = frozenset({429, 503, 529})

# Creative side task
CREATIVE_TASK_KEYWORDS = ("design", "create", "generate", "concept", "visual", "illustration", "artwork", "mockup", "draft")
CREATIVE_WORKER_KEYWORDS = ("design", "creative", "artist", "illustrator")
CREATIVE_OUTPUT_KEYWORDS = ("design", "concept", "visual", "image", "artwork", "mockup")
MAX_IMAGES_PER_TASK = 3

RUN_LIST_LIMIT = 100
