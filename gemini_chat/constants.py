"""Constants and default configuration values for the LINE Gemini bridge."""

# App Configuration
APP_NAME = "line_gemini_bot"
DEFAULT_MODEL = "gemini-2.5-flash"
DEFAULT_LOCATION = "us-central1"
DEFAULT_PORT = 8080

# Backend kinds
BACKEND_GEMINI = "gemini"
BACKEND_ADK = "adk"

ALLOWED_BACKENDS = [
    BACKEND_GEMINI,
    BACKEND_ADK,
]

# Topic filter match modes
TOPIC_MODE_SUBSTRING = "substring"  # keyword appears anywhere in the text
TOPIC_MODE_WORD = "word"  # keyword equals one of the words in the text

ALLOWED_TOPIC_MODES = [
    TOPIC_MODE_SUBSTRING,
    TOPIC_MODE_WORD,
]

# Session scopes
SESSION_SCOPE_USER = "user"  # one session per LINE user, even inside groups
SESSION_SCOPE_CHAT = "chat"  # one shared session per group / room

ALLOWED_SESSION_SCOPES = [
    SESSION_SCOPE_USER,
    SESSION_SCOPE_CHAT,
]

# In-band commands
RESET_COMMAND = "reset"
PROMPT_COMMAND_PREFIX = "prompt:"

# Canned replies
GREETING_TEXT = "Nice to meet you! What would you like to know?"
REFUSAL_TEXT = "Sorry, I can only answer questions about the configured topic."
PROMPT_SET_TEXT = "Got it. I will keep that in mind for the rest of our chat."
PROMPT_CLEARED_TEXT = "Prompt override cleared."
APOLOGY_TEXT = "Sorry, I couldn't get an answer right now. Please try again."
EMPTY_RESPONSE_TEXT = "I received your message but couldn't generate a response."
IMAGE_FAILURE_TEXT = "Unable to recognise the image, please try again: "
STICKER_TEMPLATE = "Received sticker: {sticker_id}, pkg: {package_id} kw: {keywords}  text: {text}"

IMAGE_PROMPT = (
    "Describe this image in detail. "
    "Answer in the same language the user most likely speaks, "
    "and keep the description concise."
)

# LINE Messaging API limits
LINE_MAX_TEXT_LENGTH = 5000
LINE_MAX_REPLY_MESSAGES = 5

# Runtime limits
DEFAULT_BACKEND_CONCURRENCY = 10
DEFAULT_BACKEND_TIMEOUT_SECONDS = 45
