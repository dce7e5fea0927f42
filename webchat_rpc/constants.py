"""Chat UI selectors, challenge phrasing, submission key tables and timing defaults."""

# ── Selectors ────────────────────────────────────────────────────────────────

# Structural queries for the target chat UI. Overridable per host through
# the selectors override file (see config.SELECTORS_OVERRIDE_PATH).
DEFAULT_SELECTORS = {
    "prompt_textarea": (
        '#prompt-textarea, textarea[data-id="root"], '
        'div[contenteditable="true"][id="prompt-textarea"], textarea[placeholder*="Message"]'
    ),
    "send_button": (
        'button[data-testid="send-button"], button[aria-label*="Send"], '
        'button[type="submit"]'
    ),
    "stop_button": (
        'button[data-testid="stop-button"], button[aria-label*="Stop"]'
    ),
    "assistant_message": '[data-message-author-role="assistant"]',
}

# Generic editable surfaces considered after the configured prompt selector.
FALLBACK_COMPOSER_SELECTOR = (
    'main textarea, main [role="textbox"], main [contenteditable="true"], '
    'textarea, [role="textbox"], [contenteditable="true"]'
)

FILE_INPUT_SELECTOR = 'input[type="file"]'

# ── Challenge Detection ──────────────────────────────────────────────────────

# Third-party human-verification widgets, matched against iframe src.
CAPTCHA_FRAME_PATTERNS = [
    r"turnstile",
    r"challenges\.cloudflare\.com",
    r"arkoselabs|arkose",
    r"hcaptcha",
    r"recaptcha",
]

VERIFY_BUTTON_PATTERN = r"verify you are human|human verification|i am human"

LOGIN_TEXT_PATTERN = r"log in|sign in|continue with"

ACCESS_DENIED_PATTERN = r"\b403\b|access denied|forbidden|unusual traffic|verify"

# Body text mentioning the conversation means the denial phrasing is chat content.
CONVERSATION_PATTERN = r"prompt"

BODY_TEXT_SAMPLE_CHARS = 5000

# ── Candidate Scoring ────────────────────────────────────────────────────────

NON_TEXT_INPUT_TYPES = r"password|search|email|url|number|tel"
COMPOSER_LABEL_PATTERN = r"prompt|message|ask|chat|query|input"
SEND_LABEL_PATTERN = r"send|submit|run|go|ask|reply"
SEND_PENALTY_PATTERN = r"stop|cancel|retry|signin|sign in|log in|google"
ATTACH_LABEL_PATTERN = r"attach|upload|paperclip"

# ── Reply Detection ──────────────────────────────────────────────────────────

CONTINUE_PATTERN = r"continue generating"
REPLY_ERROR_PATTERN = r"something went wrong|try again|error"
REPLY_ERROR_MAX_CHARS = 500

# ── Submission Key Tables ────────────────────────────────────────────────────

# "Primary" resolves to Meta on macOS and Control elsewhere.
PRIMARY_MODIFIER = "Primary"

# Host substring -> ordered keyboard fallbacks tried after clicking send fails.
SUBMIT_KEY_COMBOS = {
    "aistudio.google.com": [
        ("Enter", ("Alt",)),
        ("Enter", (PRIMARY_MODIFIER,)),
        ("Enter", ()),
    ],
    "grok.com": [
        ("Enter", (PRIMARY_MODIFIER,)),
        ("Enter", ()),
    ],
}

DEFAULT_SUBMIT_KEY_COMBOS = [
    ("Enter", ()),
    ("Enter", (PRIMARY_MODIFIER,)),
    ("Enter", ("Alt",)),
]

# ── Images ───────────────────────────────────────────────────────────────────

MAX_INLINE_IMAGE_BYTES = 15 * 1024 * 1024
DEFAULT_MAX_IMAGES = 6

# ── Timeouts ─────────────────────────────────────────────────────────────────

DEFAULT_READY_TIMEOUT_MS = 10 * 60_000
DEFAULT_QUERY_TIMEOUT_MS = 10 * 60_000
DEFAULT_SEND_TIMEOUT_MS = 3 * 60_000
DEFAULT_READ_MAX_CHARS = 200_000
