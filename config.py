"""Configuration module for the scene and character pipeline."""
import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Storage Configuration
DB_PATH = Path(os.getenv("DB_PATH", "./output/pipeline.db"))
CHROMA_PATH = Path(os.getenv("CHROMA_PATH", "./output/chroma"))

# Ensure output directories exist
DB_PATH.parent.mkdir(parents=True, exist_ok=True)
CHROMA_PATH.mkdir(parents=True, exist_ok=True)

# LLM Providers
# Credentials are resolved per caller at stage start (see providers.credentials)
DEFAULT_CALLER_ID = os.getenv("CALLER_ID", "local")
DEFAULT_LLM_PROVIDER = os.getenv("DEFAULT_LLM_PROVIDER", "ollama")
ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-3-5-sonnet-20241022")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4-turbo-preview")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OLLAMA_HOST = os.getenv("OLLAMA_HOST", "http://localhost:11434")
OLLAMA_MODEL = os.getenv("OLLAMA_MODEL", "deepseek-r1:latest")
LLM_TEMPERATURE = float(os.getenv("LLM_TEMPERATURE", "0.7"))
LLM_MAX_TOKENS = int(os.getenv("LLM_MAX_TOKENS", "2000"))
LLM_TIMEOUT_SECONDS = float(os.getenv("LLM_TIMEOUT_SECONDS", "120"))

# Embedding Providers
DEFAULT_EMBEDDING_PROVIDER = os.getenv("DEFAULT_EMBEDDING_PROVIDER", "local")
LOCAL_EMBEDDING_MODEL = os.getenv("LOCAL_EMBEDDING_MODEL", "all-MiniLM-L6-v2")
OPENAI_EMBEDDING_MODEL = os.getenv("OPENAI_EMBEDDING_MODEL", "text-embedding-3-small")
OLLAMA_EMBEDDING_MODEL = os.getenv("OLLAMA_EMBEDDING_MODEL", "nomic-embed-text")
EMBEDDING_BATCH_DELAY = 0.1  # Seconds between sequential embed calls

# Text Extraction
MIN_CHAPTER_CHARS = int(os.getenv("MIN_CHAPTER_CHARS", "100"))
FRONT_MATTER_TITLES = [
    r"^copyright",
    r"^(table of )?contents$",
    r"^title page$",
    r"^dedication$",
    r"^acknowledg(e)?ments?$",
    r"^about the author",
    r"^also by",
    r"^cover$",
    r"^index$",
]

# Character Deduplication
DEDUP_CONFIDENCE_THRESHOLD = float(os.getenv("DEDUP_CONFIDENCE_THRESHOLD", "0.7"))
DEDUP_AMBIGUOUS_FLOOR = float(os.getenv("DEDUP_AMBIGUOUS_FLOOR", "0.5"))
NAME_SIMILARITY_CUTOFF = float(os.getenv("NAME_SIMILARITY_CUTOFF", "0.3"))
DEDUP_SAMPLE_MENTIONS = 5
PROFILE_SAMPLE_MENTIONS = 10

# Role classification (appearances / total scenes)
ROLE_PROTAGONIST_RATIO = 0.4
ROLE_SUPPORTING_RATIO = 0.2

# Similarity Search
SIMILARITY_THRESHOLD = float(os.getenv("SIMILARITY_THRESHOLD", "0.7"))
SIMILARITY_LIMIT = int(os.getenv("SIMILARITY_LIMIT", "10"))

# Rate Limiting
API_CALL_DELAY = float(os.getenv("API_CALL_DELAY", "0.5"))  # Seconds between LLM calls
RATE_LIMIT_BACKOFF_MULTIPLIER = 3
MAX_BACKOFF_SECONDS = 600

# Stage queues: attempts and base backoff (seconds, doubled per attempt)
QUEUE_POLICIES = {
    "segmentation": {"attempts": 3, "backoff": 5.0},
    "analysis": {"attempts": 2, "backoff": 10.0},
    "discovery": {"attempts": 2, "backoff": 10.0},
}

# Worker pool sizes
SEGMENTATION_WORKERS = int(os.getenv("SEGMENTATION_WORKERS", "2"))
ANALYSIS_WORKERS = int(os.getenv("ANALYSIS_WORKERS", "1"))
DISCOVERY_WORKERS = int(os.getenv("DISCOVERY_WORKERS", "1"))
QUEUE_POLL_INTERVAL = 1.0

# Finished jobs are kept this long before cleanup
COMPLETED_JOB_RETENTION_HOURS = 24
FAILED_JOB_RETENTION_HOURS = 7 * 24
