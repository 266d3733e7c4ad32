import os
import logging
from typing import Optional
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    # ---------------------------
    # ✅ API Keys
    # ---------------------------
    GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

    # ---------------------------
    # ✅ Mailbox Addresses
    # ---------------------------
    SUPERVISOR_EMAIL: str = os.getenv("SUPERVISOR_EMAIL", "supervisor@example.com")
    SUPPORT_EMAIL: str = os.getenv("SUPPORT_EMAIL", "support@example.com")
    AGENT_SIGNATURE: str = "– Support Team"

    # ---------------------------
    # ✅ Persistent Store
    # ---------------------------
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "support_inbox.db")

    # ---------------------------
    # ✅ Order Lookup (Shopify)
    # ---------------------------
    SHOPIFY_STORE_DOMAIN: str = os.getenv("SHOPIFY_STORE_DOMAIN", "")
    SHOPIFY_ACCESS_TOKEN: str = os.getenv("SHOPIFY_ACCESS_TOKEN", "")
    SHOPIFY_API_VERSION: str = "2024-10"
    # Verification passes without checks when no order lookup is configured.
    # TODO: confirm with product whether production should ever run with this on.
    AUTO_VERIFY_WITHOUT_ORDER_LOOKUP: bool = True

    # ---------------------------
    # ✅ Outbound Mail (SMTP)
    # ---------------------------
    SMTP_HOST: str = os.getenv("SMTP_HOST", "")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USERNAME: str = os.getenv("SMTP_USERNAME", "")
    SMTP_PASSWORD: str = os.getenv("SMTP_PASSWORD", "")
    SMTP_STARTTLS: bool = True

    # ---------------------------
    # ✅ Elasticsearch Configuration
    # ---------------------------
    ELASTICSEARCH_URL: str = os.getenv("ELASTICSEARCH_URL", "http://localhost:9200")
    ELASTICSEARCH_CHUNK_INDEX: str = os.getenv("ELASTICSEARCH_CHUNK_INDEX", "support_kb_chunks")
    # "elasticsearch" or "memory"
    VECTOR_BACKEND: str = os.getenv("VECTOR_BACKEND", "elasticsearch")

    # ---------------------------
    # ✅ Embedding Model Configuration
    # ---------------------------
    EMBEDDING_MODEL: str = "mixedbread-ai/mxbai-embed-large-v1"
    EMBEDDING_FALLBACK_MODEL: str = "all-MiniLM-L6-v2"
    EMBEDDING_DIMENSION: int = 1024

    # ---------------------------
    # ✅ LLM Configuration
    # ---------------------------
    GEMINI_MODEL: str = "gemini-1.5-pro"
    TEMPERATURE: float = 0.1
    DRAFT_TEMPERATURE: float = 0.7
    MAX_TOKENS: int = 2000

    # ---------------------------
    # ✅ Application Configuration
    # ---------------------------
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    EXTERNAL_CALL_TIMEOUT_SECONDS: float = 30.0

    # ---------------------------
    # ✅ Thread Lifecycle
    # ---------------------------
    MIN_CONFIDENCE_THRESHOLD: float = 0.3
    ESCALATION_DEDUP_HOURS: int = 24
    ESCALATION_LABEL: str = "Escalated"
    ESCALATION_INSTRUCTION_SECTION: str = "escalation_learnings"
    LEARNED_INSTRUCTION_SECTION: str = "learned_behaviors"

    PROTECTED_INTENTS: list[str] = [
        "ORDER_STATUS", "ORDER_CHANGE_REQUEST", "MISSING_DAMAGED_ITEM",
        "WRONG_ITEM_RECEIVED", "RETURN_REFUND_REQUEST", "PRODUCT_SUPPORT",
        "FIRMWARE_UPDATE_REQUEST", "FIRMWARE_ACCESS_ISSUE",
        "INSTALL_GUIDANCE", "FUNCTIONALITY_BUG"
    ]

    ESCALATION_INTENTS: list[str] = ["CHARGEBACK_THREAT", "LEGAL_SAFETY_RISK"]
    CLOSING_INTENTS: list[str] = ["THANK_YOU_CLOSE"]

    FRUSTRATION_KEYWORDS: list[str] = [
        "angry", "frustrated", "disappointed", "terrible", "worst",
        "unacceptable", "ridiculous", "pathetic", "hate", "still waiting"
    ]

    # Store-specific order prefixes, e.g. "ORD-10482"
    ORDER_NUMBER_PREFIXES: list[str] = ["ORD"]

    # ---------------------------
    # ✅ Verification Flags
    # ---------------------------
    NEGATIVE_FLAG_TAGS: list[str] = [
        "chargeback", "fraud", "fraud_risk", "do_not_support", "abusive",
        "blocked", "banned", "dispute", "scam", "blacklist"
    ]

    NEGATIVE_NOTE_KEYWORDS: list[str] = [
        "chargeback", "fraud", "abusive", "threatening", "do not support",
        "blacklist", "scam", "dispute", "banned"
    ]

    # ---------------------------
    # ✅ Learning Pipeline
    # ---------------------------
    MIN_DIALOGUE_MESSAGES: int = 3
    MIN_DIALOGUE_QUALITY: float = 0.5
    NEUTRAL_DIALOGUE_QUALITY: float = 0.5
    TRANSCRIPT_MESSAGE_CHARS: int = 800
    EXISTING_KB_SUMMARY_LIMIT: int = 10
    KB_CANDIDATE_MIN_LENGTH: int = 100
    AUTO_APPROVAL_REVIEWER: str = "auto-approval-system"

    AUTO_APPROVAL_THRESHOLDS: dict[str, dict[str, float]] = {
        "kb_article": {
            "min_confidence": 0.85,
            "min_dialogue_quality": 0.70,
            "max_similarity": 0.85
        },
        "instruction_update": {
            "min_confidence": 0.80,
            "min_dialogue_quality": 0.60,
            "max_similarity": 0.85
        }
    }

    # ---------------------------
    # ✅ Duplicate Detection
    # ---------------------------
    DUPLICATE_RETRIEVAL_FLOOR: float = 0.70
    HARD_DUPLICATE_SIMILARITY: float = 0.85
    DUPLICATE_MATCH_COUNT: int = 3
    DUPLICATE_CHECK_MAX_CHARS: int = 2000

    # ---------------------------
    # ✅ Knowledge Chunking
    # ---------------------------
    CHUNK_MAX_SIZE: int = 512
    CHUNK_OVERLAP: int = 50
    CHUNK_MIN_SIZE: int = 100

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()


def configure_logging(level: Optional[str] = None):
    """Configure root logging once for scripts and embedding applications"""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
    )
