"""Configuration management for the page triage backend."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "json" switches to structured logs

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173"
).split(",")

# Model Configuration
CHAT_MODEL = os.getenv("CHAT_MODEL", "llama-3.3-70b-versatile")
VISION_MODEL = os.getenv("VISION_MODEL", "meta-llama/llama-4-scout-17b-16e-instruct")
AVAILABLE_MODELS = [
    "llama-3.3-70b-versatile",
    "llama-3.1-8b-instant",
    "meta-llama/llama-4-scout-17b-16e-instruct",
]

# Matching Configuration
FUZZY_THRESHOLD = float(os.getenv("FUZZY_THRESHOLD", "0.85"))

# Extraction Configuration
MIN_TEXT_CHARS = 50  # text layers shorter than this get OCR in "auto" mode
OCR_SCALE = 2.0
IMAGE_SCALE = 1.5  # page screenshots sent to the vision model
ROW_TOLERANCE = 3.0  # points; fragments closer than this share a row

# AI call limits (seconds)
AI_PAGE_TIMEOUT = float(os.getenv("AI_PAGE_TIMEOUT", "45"))
AI_REQUEST_TIMEOUT = float(os.getenv("AI_REQUEST_TIMEOUT", "60"))

# Storage Configuration
STORAGE_BUCKET = os.getenv("STORAGE_BUCKET", "pdf-files")

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
