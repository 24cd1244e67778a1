"""
Structured Vision LLM Service.

Wraps the OpenAI-compatible clients (OpenAI itself and Qwen through the
DashScope compatible endpoint) used to read exam headers, multiple-choice
answers and subjective answers from scanned images.
"""
import base64
import json
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Type, TypeVar

from loguru import logger
from openai import AsyncOpenAI, OpenAIError
from pydantic import BaseModel, ValidationError

from ezmark.config import settings
from ezmark.schemas import HeaderRecognition, MCQRecognition, SubjectiveGrading, SubjectiveSuggestion
from ezmark.services.prompt_management import get_prompt, get_system_prompt

logger = logger.bind(module="services.llm_service")

T = TypeVar("T", bound=BaseModel)

UNKNOWN = "Unknown"

QWEN_HINTS = ("qwen", "dashscope", "ali", "aliyun")
OPENAI_HINTS = ("openai", "azure-openai", "azure")

DEFAULT_QWEN_MODEL = "qwen-vl-max-2025-01-25"
DEFAULT_OPENAI_MODELS = {
    "matching": "gpt-4o-mini",
    "objective": "gpt-4o-mini",
    "subjective": "gpt-4o",
}


class LLMRequestError(Exception):
    """Transport-level failure talking to a vision model."""

    def __init__(self, message: str, meta: Optional[Dict[str, object]] = None):
        super().__init__(message)
        self.meta = meta or {}

    def describe(self) -> str:
        header = self.meta.get("header")
        model = self.meta.get("model")
        parts = [str(self)]
        context = [p for p in (f"header {header}" if header else None, f"via {model}" if model else None) if p]
        if context:
            parts.append(f"({' '.join(context)})")
        return " ".join(parts)


class LLMConfigurationError(Exception):
    pass


@dataclass(frozen=True)
class ModelResolution:
    provider: str  # "openai" | "qwen"
    model: str
    source: str


def _is_qwen_model(name: str) -> bool:
    return bool(re.match(r"^(qwen|dashscope)", name, re.IGNORECASE))


def resolve_model(purpose: str, provider_hint: Optional[str], model_name: Optional[str]) -> ModelResolution:
    """
    Pick the provider and model for a pipeline stage.

    An explicit provider hint wins; otherwise Qwen is preferred when its
    credentials are configured or the model name names a Qwen model.
    A model name that belongs to the other provider is ignored.
    """
    hint = (provider_hint or "").strip().lower()
    model_name = (model_name or "").strip() or None

    if hint in QWEN_HINTS:
        provider = "qwen"
    elif hint in OPENAI_HINTS:
        provider = "openai"
    elif settings.qwen_api_key:
        provider = "qwen"
    elif model_name and ("qwen" in model_name.lower() or "dashscope" in model_name.lower()):
        provider = "qwen"
    else:
        provider = "openai"

    env_key = f"{purpose.upper()}_MODEL_NAME"
    if provider == "qwen":
        if model_name and _is_qwen_model(model_name):
            return ModelResolution("qwen", model_name, env_key)
        if model_name:
            logger.info(f"Ignoring non-Qwen {purpose} model '{model_name}' for Qwen provider")
        return ModelResolution("qwen", DEFAULT_QWEN_MODEL, "default-qwen")

    if model_name and not model_name.lower().startswith("qwen"):
        return ModelResolution("openai", model_name, env_key)
    return ModelResolution("openai", DEFAULT_OPENAI_MODELS.get(purpose, "gpt-4o-mini"), "default-openai")


def image_to_data_url(image_path: str) -> str:
    with open(image_path, "rb") as f:
        encoded = base64.b64encode(f.read()).decode("utf-8")
    return f"data:image/png;base64,{encoded}"


def _extract_json(content: str) -> str:
    """Strip markdown fences some providers wrap around JSON answers."""
    fenced = re.search(r"```(?:json)?\s*(.*?)```", content, re.DOTALL)
    if fenced:
        return fenced.group(1).strip()
    return content.strip()


class VisionLLMService:
    """Service for structured outputs from vision LLMs."""

    def __init__(self):
        self._clients: Dict[str, AsyncOpenAI] = {}

    def _client(self, provider: str) -> AsyncOpenAI:
        if provider not in self._clients:
            if provider == "qwen":
                api_key, base_url, env = settings.qwen_api_key, settings.qwen_base_url, "QWEN_API_KEY"
            else:
                api_key, base_url, env = settings.openai_api_key, settings.openai_base_url, "OPENAI_API_KEY"
            if not api_key:
                raise LLMConfigurationError(f"Missing required environment variable: {env}")
            self._clients[provider] = AsyncOpenAI(api_key=api_key, base_url=base_url or None)
        return self._clients[provider]

    async def generate_response(
        self,
        resolution: ModelResolution,
        response_model: Type[T],
        system_prompt: str,
        image_path: str,
        user_prompt: str = "",
        temperature: float = 0.0,
    ) -> Optional[T]:
        """
        Send one image with prompts and parse the answer into response_model.

        Returns None when the model answered but the answer does not fit the
        schema; raises LLMRequestError when the request itself failed.
        """
        content: List[dict] = [{"type": "image_url", "image_url": {"url": image_to_data_url(image_path)}}]
        if user_prompt:
            content.append({"type": "text", "text": user_prompt})
        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": content},
        ]
        client = self._client(resolution.provider)

        try:
            if resolution.provider == "openai":
                completion = await client.chat.completions.parse(
                    model=resolution.model,
                    messages=messages,
                    response_format=response_model,
                    temperature=temperature,
                )
                message = completion.choices[0].message
                if message.parsed is not None:
                    return message.parsed
                raw = message.content or ""
            else:
                completion = await client.chat.completions.create(
                    model=resolution.model,
                    messages=messages,
                    response_format={"type": "json_object"},
                    temperature=temperature,
                )
                raw = completion.choices[0].message.content or ""
        except ValidationError as e:
            logger.error(f"{resolution.model} answer does not fit {response_model.__name__}: {e}")
            return None
        except OpenAIError as e:
            raise LLMRequestError(
                f"Failed to send image to {resolution.provider} model",
                {"model": resolution.model, "provider": resolution.provider, "cause": str(e)},
            ) from e

        try:
            return response_model.model_validate_json(_extract_json(raw))
        except (ValidationError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse {response_model.__name__} from {resolution.model}: {e}; preview={raw[:200]!r}")
            return None

    async def recognize_header(
        self,
        image_path: str,
        schedule_id: str = "",
        header_index: int = 0,
        total_headers: int = 0,
    ) -> HeaderRecognition:
        """Read the handwritten name and student id from a header crop."""
        resolution = resolve_model("matching", settings.matching_provider, settings.matching_model_name)
        label = f"{header_index + 1}/{total_headers}" if total_headers else f"{header_index + 1}"
        logger.info(
            f"Sending header {label} of schedule {schedule_id} to {resolution.provider}/{resolution.model} "
            f"({resolution.source})"
        )
        try:
            result = await self.generate_response(
                resolution, HeaderRecognition, get_system_prompt("header_recognition"), image_path
            )
        except LLMRequestError as e:
            e.meta.update({"header": label, "scheduleId": schedule_id, "modelSource": resolution.source})
            logger.error(f"Header recognition failed: {e.describe()}")
            raise

        if result is None:
            return HeaderRecognition(reason="unparsable response", name=UNKNOWN, studentId=UNKNOWN)
        return result

    async def recognize_mcq(self, image_path: str) -> List[str]:
        """Read the chosen options of a multiple-choice answer; ["Unknown"] when unsure."""
        resolution = resolve_model("objective", settings.objective_provider, settings.objective_model_name)
        result = await self.generate_response(
            resolution, MCQRecognition, get_system_prompt("mcq_recognition"), image_path
        )
        if result is None:
            return [UNKNOWN]
        answers = [a.strip() for a in result.answer if a.strip()]
        return [UNKNOWN if a.lower() == UNKNOWN.lower() else a.upper() for a in answers]

    async def ask_subjective(self, question: str, answer: str, score: float, image_path: str) -> SubjectiveSuggestion:
        """Grade a handwritten subjective answer against the reference answer."""
        resolution = resolve_model("subjective", settings.subjective_provider, settings.subjective_model_name)
        prompt = get_prompt("subjective_grading", question=question, answer=answer, score=score)
        result = await self.generate_response(
            resolution,
            SubjectiveGrading,
            prompt["system_prompt"],
            image_path,
            user_prompt=prompt["human_prompt"],
        )
        if result is None:
            return SubjectiveSuggestion(
                reasoning=UNKNOWN,
                ocr_result=UNKNOWN,
                suggestion="Failed to Generate Result",
                score=-1,
            )
        return SubjectiveSuggestion(
            reasoning=result.reasoning,
            ocr_result=result.ocrResult,
            suggestion=result.suggestion,
            score=min(max(result.score, 0), score),
        )


# Singleton instance
llm_service = VisionLLMService()
