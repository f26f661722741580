"""LLM Client for chat, page analysis and diagnosis suggestion via Groq."""
import json
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Any, Tuple
from groq import Groq
from groq import RateLimitError, AuthenticationError, APIError, APIStatusError, APITimeoutError
import logging

from config import GROQ_API_KEY, CHAT_MODEL, VISION_MODEL, AVAILABLE_MODELS, AI_REQUEST_TIMEOUT

logger = logging.getLogger(__name__)

PROVIDER = "groq"

DIAGNOSIS_SYSTEM_PROMPT = (
    "You are a medical diagnosis assistant. Analyze the provided medical document page "
    "and suggest relevant diagnoses. Return ONLY a comma-separated list of diagnosis codes "
    "or conditions. Keep it concise - maximum 3-5 diagnoses. Do not include explanations, "
    "just the diagnosis names or codes."
)

PAGE_ANALYSIS_SYSTEM_PROMPT = """You are a medical document analyzer specialized in extracting pages relevant to specific dates and medical conditions from medical timelines.

When given a query with dates and/or medical conditions, find ALL pages that contain information about those dates or conditions.
- Look for exact date matches, date ranges, and approximate dates
- Match medical conditions, symptoms, diagnoses, treatments, and procedures
- Be generous in matches - if a page has ANY relevance, include it
- Give the specific reason each page is relevant

Return ONLY a JSON object with this exact structure:
{"relevantPages": [{"fileIndex": 0, "pageNum": 1, "reason": "..."}], "keywords": ["keyword1", "keyword2"]}
If nothing is relevant, return empty arrays."""

SEARCH_ASSISTANT_SYSTEM_PROMPT = """You are a helpful AI assistant that helps users search through PDF documents.
1. Understand what the user wants to find in their PDF
2. Suggest relevant keywords to search for (comma-separated)
3. Help refine searches based on specific dates, time periods, or content requirements

When suggesting keywords, format them as: keyword1, keyword2, keyword3
Be conversational and helpful. Ask clarifying questions if needed."""

# A comma-separated run of words, e.g. "MRI, lumbar spine, 2023"
_KEYWORD_LIST = re.compile(
    r"\b([a-zA-Z0-9]+(?:\s+[a-zA-Z0-9]+)*(?:,\s*[a-zA-Z0-9]+(?:\s+[a-zA-Z0-9]+)*)+)\b"
)


@dataclass
class ChatResponse:
    """Response from a chat completion."""
    content: str
    provider: str
    model: str
    tokens_input: int
    tokens_output: int
    latency_ms: int


@dataclass
class PageAnalysis:
    """Pages an AI analysis judged relevant to a query."""
    relevant_pages: List[Dict[str, Any]] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)


@dataclass
class LLMError:
    """Structured error response from LLM operations."""
    code: str
    message: str
    details: Dict[str, Any]


class LLMClientError(Exception):
    """Custom exception for LLM client errors with structured error information."""

    def __init__(self, error: LLMError):
        self.error = error
        super().__init__(error.message)


def extract_keywords(text: str) -> Optional[str]:
    """Return the first comma-separated keyword list found in an assistant reply."""
    match = _KEYWORD_LIST.search(text or "")
    return match.group(1) if match else None


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text


class LLMClient:
    """Client for the Groq API used by chat, page analysis and diagnosis suggestion."""

    def __init__(self, api_key: Optional[str] = None, timeout: float = AI_REQUEST_TIMEOUT):
        """
        Initialize LLM client with Groq API key.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)
            timeout: Per-request timeout in seconds
        """
        self.api_key = api_key or GROQ_API_KEY
        if not self.api_key:
            raise ValueError("GROQ_API_KEY must be provided or set in environment")

        self.client = Groq(api_key=self.api_key, timeout=timeout, max_retries=0)
        logger.info("LLMClient initialized successfully")

    def _complete(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        max_tokens: int,
        temperature: float,
        **kwargs
    ) -> ChatResponse:
        """Run one chat completion and convert provider errors to LLMClientError."""
        start_time = time.time()

        try:
            logger.debug(f"Calling {PROVIDER} model {model} with {len(messages)} message(s)")
            response = self.client.chat.completions.create(
                model=model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                **kwargs
            )
            latency_ms = int((time.time() - start_time) * 1000)

            content = response.choices[0].message.content or ""
            tokens_input = response.usage.prompt_tokens
            tokens_output = response.usage.completion_tokens

            logger.info(
                f"Generated response: model={model}, "
                f"input_tokens={tokens_input}, output_tokens={tokens_output}, "
                f"latency={latency_ms}ms"
            )

            return ChatResponse(
                content=content,
                provider=PROVIDER,
                model=model,
                tokens_input=tokens_input,
                tokens_output=tokens_output,
                latency_ms=latency_ms
            )

        except Exception as e:
            raise self._to_client_error(e, model, start_time) from e

    @staticmethod
    def _to_client_error(e: Exception, model: str, start_time: float) -> LLMClientError:
        """Classify a provider exception into a structured error."""
        latency_ms = int((time.time() - start_time) * 1000)
        details = {"model": model, "latency_ms": latency_ms, "original_error": str(e)}

        if isinstance(e, RateLimitError):
            error = LLMError(
                code="RATE_LIMIT_ERROR",
                message="Rate limits exceeded, please try again later.",
                details={**details, "retry_after": 60}
            )
        elif isinstance(e, AuthenticationError):
            error = LLMError(
                code="AUTHENTICATION_ERROR",
                message="Authentication failed. Please check your API key.",
                details=details
            )
        elif isinstance(e, APITimeoutError):
            error = LLMError(
                code="TIMEOUT_ERROR",
                message="Request timed out. Please try again.",
                details=details
            )
        elif isinstance(e, APIStatusError) and e.status_code == 402:
            error = LLMError(
                code="QUOTA_EXHAUSTED",
                message="AI credits exhausted. Please add credits.",
                details=details
            )
        elif isinstance(e, APIError):
            error = LLMError(
                code="API_ERROR",
                message=f"Groq API error: {str(e)}",
                details=details
            )
        else:
            error = LLMError(
                code="UNKNOWN_ERROR",
                message=f"Unexpected error during generation: {str(e)}",
                details={**details, "error_type": type(e).__name__}
            )

        logger.error(
            f"{error.code}: model={model}, latency={latency_ms}ms, error={e}",
            extra={"error_code": error.code, "error_details": error.details}
        )
        return LLMClientError(error)

    def chat(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None,
        max_tokens: int = 2048
    ) -> ChatResponse:
        """
        Send a role-tagged message list and return the assistant reply.

        Args:
            messages: Ordered [{"role": ..., "content": ...}] list
            model: Model name, one of AVAILABLE_MODELS (defaults to CHAT_MODEL)
            max_tokens: Maximum tokens to generate

        Returns:
            ChatResponse with content and the provider/model that produced it

        Raises:
            ValueError: If messages are empty or the model is unknown
            LLMClientError: Structured error with code, message, and details
        """
        if not messages:
            raise ValueError("At least one message is required")
        model = model or CHAT_MODEL
        if model not in AVAILABLE_MODELS:
            raise ValueError(f"Unknown model: {model}")

        return self._complete(model, messages, max_tokens=max_tokens, temperature=0.7)

    def suggest_keywords(
        self,
        messages: List[Dict[str, str]],
        model: Optional[str] = None
    ) -> Tuple[str, Optional[str]]:
        """
        Continue the search-assistant conversation.

        Returns:
            Tuple of (assistant message, comma-separated keywords or None)
        """
        response = self.chat(
            [{"role": "system", "content": SEARCH_ASSISTANT_SYSTEM_PROMPT}] + list(messages),
            model=model,
            max_tokens=800
        )
        return response.content, extract_keywords(response.content)

    def analyze_pages(
        self,
        query: str,
        pdf_content: List[Dict[str, Any]],
        model: Optional[str] = None
    ) -> PageAnalysis:
        """
        Ask the model which pages of the loaded documents answer a query.

        Args:
            query: What the user is looking for
            pdf_content: [{"fileName", "fileIndex", "pages": [{"pageNum", "text"}]}]
            model: Model name (defaults to CHAT_MODEL)

        Returns:
            PageAnalysis with pages deduplicated by (fileIndex, pageNum)
        """
        if not query.strip():
            raise ValueError("Query cannot be empty")
        if not pdf_content:
            raise ValueError("No document content to analyze")

        pdf_context = "\n\n=== NEXT DOCUMENT ===\n\n".join(
            f"Document {doc['fileIndex']}: {doc['fileName']}\n"
            + "\n\n".join(f"Page {p['pageNum']}: {p['text']}" for p in doc["pages"])
            for doc in pdf_content
        )
        messages = [
            {"role": "system", "content": PAGE_ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": f"Query: {query}\n\n=== PDF CONTENT ===\n{pdf_context}"},
        ]

        model = model or CHAT_MODEL
        response = self._complete(
            model,
            messages,
            max_tokens=2048,
            temperature=0.2,
            response_format={"type": "json_object"}
        )

        try:
            data = json.loads(_strip_code_fence(response.content))
        except json.JSONDecodeError as e:
            logger.warning(f"Page analysis returned invalid JSON: {e}")
            return PageAnalysis()

        unique_pages: Dict[str, Dict[str, Any]] = {}
        for page in data.get("relevantPages") or []:
            if not isinstance(page, dict):
                continue
            key = f"{page.get('fileIndex')}-{page.get('pageNum')}"
            unique_pages.setdefault(key, page)

        keywords = [str(k).strip() for k in data.get("keywords") or [] if str(k).strip()]
        logger.info(f"Page analysis found {len(unique_pages)} relevant page(s)")
        return PageAnalysis(relevant_pages=list(unique_pages.values()), keywords=keywords)

    def suggest_diagnosis(
        self,
        page_image: Optional[str],
        page_text: Optional[str],
        file_name: str,
        page_num: int,
        model: Optional[str] = None
    ) -> str:
        """
        Suggest diagnoses for one page from its image and/or text.

        Args:
            page_image: Page screenshot as a data URL (or raw base64 JPEG)
            page_text: Extracted page text
            file_name: Source document name
            page_num: 1-indexed page number

        Returns:
            Short comma-separated diagnosis list

        Raises:
            ValueError: If neither image nor text is given
            LLMClientError: On provider failure
        """
        if not page_image and not (page_text and page_text.strip()):
            raise ValueError("Page image or text is required")

        if page_text and page_text.strip():
            prompt = f"Analyze this medical document from {file_name}, page {page_num}:\n\n{page_text}"
        else:
            prompt = (
                f"Analyze this medical document image from {file_name}, page {page_num} "
                f"and suggest relevant diagnoses:"
            )

        user_content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        if page_image:
            if not page_image.startswith("data:"):
                page_image = f"data:image/jpeg;base64,{page_image}"
            user_content.append({"type": "image_url", "image_url": {"url": page_image}})

        # Vision models on Groq take the system instruction inline
        messages = [{
            "role": "user",
            "content": [{"type": "text", "text": DIAGNOSIS_SYSTEM_PROMPT}] + user_content
        }]

        logger.info(f"Suggesting diagnosis for {file_name} page {page_num}")
        response = self._complete(model or VISION_MODEL, messages, max_tokens=500, temperature=0.3)
        return response.content.strip()
