"""Application constants."""

from enum import Enum


class ContentFormat(str, Enum):
    """Output format of the HTML normalizer."""

    MARKDOWN = "markdown"
    PLAIN = "plain"


class ChunkingStrategy(str, Enum):
    """Chunking strategy selector."""

    SENTENCE = "sentence"
    SLIDING_WINDOW = "sliding_window"


# Normalization
DEFAULT_TITLE = "Diabetes Information"
DEFAULT_MIN_CONTENT_LENGTH = 100

REMOVE_SELECTORS = [
    "script",
    "style",
    "noscript",
    "template",
    "iframe",
    "form",
    "nav",
    "header",
    "footer",
    "aside",
    ".navigation",
    ".nav",
    ".menu",
    ".sidebar",
    ".breadcrumb",
    ".breadcrumbs",
    ".advertisement",
    ".ad",
    ".ads",
    ".cookie-banner",
    ".social-share",
    "[role=navigation]",
    "[aria-hidden=true]",
]

MAIN_CONTENT_SELECTORS = [
    "main",
    "article",
    "[role=main]",
    ".content",
    ".main-content",
    ".article-content",
    "#content",
    "#main-content",
]

# Hashing
DATE_PLACEHOLDER = "<date>"

# Quality scoring
DEFAULT_MIN_QUALITY_THRESHOLD = 50

DOMAIN_KEYWORDS = [
    "diabetes",
    "diabetic",
    "insulin",
    "glucose",
    "blood sugar",
    "type 1",
    "type 2",
    "gestational",
    "prediabetes",
    "a1c",
    "hypoglycemia",
    "hyperglycemia",
    "carbohydrate",
    "treatment",
]

# Chunking defaults
DEFAULT_MAX_CHUNK_SIZE = 1000
DEFAULT_CHUNK_OVERLAP_WORDS = 100
DEFAULT_WINDOW_OVERLAP_RATIO = 0.25  # 25% overlap

# Batch processing
DEFAULT_BATCH_SIZE = 3
DEFAULT_RATE_LIMIT_DELAY = 1.0  # seconds
DEFAULT_MAX_RETRIES = 3
DEFAULT_RECORD_TTL_DAYS = 90

# Discovery
DEFAULT_SEED_PATHS = ["/"]

IRRELEVANT_PATH_PATTERNS = [
    "/admin",
    "/login",
    "/search",
    "/cart",
    "/checkout",
    "/wp-admin",
    "/wp-content",
    "/api/",
    "/ajax/",
    "/donate/payment",
    "/unsubscribe",
    "/privacy-policy",
]

COMMON_SITEMAP_PATHS = [
    "/sitemap.xml",
    "/sitemap_index.xml",
    "/sitemap/sitemap.xml",
    "/sitemaps/sitemap.xml",
    "/wp-sitemap.xml",
    "/sitemap-index.xml",
]

SKIPPED_LINK_EXTENSIONS = (
    ".pdf",
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".svg",
    ".webp",
    ".zip",
    ".mp3",
    ".mp4",
    ".css",
    ".js",
    ".xml",
)

# (path keywords, relevance) in priority order
RELEVANCE_RULES = [
    (("diabetes", "insulin", "glucose", "a1c", "blood-sugar"), 0.9),
    (("health", "nutrition", "food", "care", "treatment", "living"), 0.7),
    (("resource", "tool", "community", "about"), 0.5),
]
DEFAULT_RELEVANCE = 0.3

# Queue message types
MESSAGE_PREPARE_INGESTION = "PREPARE_INGESTION"
MESSAGE_TRIGGER_INGESTION = "TRIGGER_INGESTION"
