"""Wire names and fixed user-facing strings."""

CHAT_EVENT = "chat"
RESUME_EVENT = "rechat"
HEARTBEAT_EVENT = "ping"

STRUCTURED_EVENT = "json"
STATUS_EVENT = "message"
CHAT_ID_EVENT = "updateChatId"

DONE_STATUS = "[DONE]"

STEP_MARKER_PREFIX = "~~Step start: "
STEP_MARKER_SUFFIX = "~~"

LINK_RESOLVE_ACTION = "ide.dealJumpFilePath"
IDE_CALLBACK_ACTION = "ideCallback"

LOGIN_REQUIRED_TEXT = "Please log in again"
TERMINAL_ERROR_TEXT = (
    "Please clear the conversation and try again. If the issue persists, "
    'please click "Feedback" to report the problem.'
)
SERVICE_ERROR_TEXT = 'Service exception. Please click "Feedback" to report the problem. Thank you!'
NOTICE_USERNAME = "assistant"
