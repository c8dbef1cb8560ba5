import asyncio
import logging
from typing import Iterable, List, Optional, Protocol

from .config import DEFAULT_MODEL, normalize_model_id
from .schemas import (
    ChatTurn,
    DispatchResult,
    HistoryEntry,
    ModelError,
    ModelFailure,
    ModelOutput,
    ModelReply,
    ModelSuccess,
)


logger = logging.getLogger("uvicorn.error")


class ModelClient(Protocol):
    async def generate(self, model: str, turn: ChatTurn, history: List[HistoryEntry]) -> ModelReply:
        ...


class DispatchError(RuntimeError):
    """Raised when every queried model failed."""

    def __init__(self, message: str, failures: Optional[List[ModelFailure]] = None):
        super().__init__(message)
        self.failures = list(failures or [])


def normalize_model_list(models: Iterable[Optional[str]], default: str = DEFAULT_MODEL) -> List[str]:
    ordered: List[str] = []
    for model in models or []:
        if not model or not str(model).strip():
            continue
        normalized = normalize_model_id(model)
        if normalized not in ordered:
            ordered.append(normalized)
    return ordered or [normalize_model_id(default)]


def _failure_from(reply: ModelReply) -> ModelFailure:
    # Refusals expose their reason through ``error`` as well.
    return ModelFailure(model=reply.model, error=reply.error)


def aggregate_replies(replies: List[ModelReply]) -> DispatchResult:
    """Reduce per-model replies (in request order) to a dispatch result."""
    successes = [ModelOutput(model=r.model, text=r.text) for r in replies if isinstance(r, ModelSuccess)]
    failures = [_failure_from(r) for r in replies if not isinstance(r, ModelSuccess)]
    if not successes:
        message = failures[0].error if failures else "Gemini request failed"
        raise DispatchError(message, failures)
    primary = successes[0]
    alternatives = [
        item for item in successes[1:] if item.model != primary.model or item.text != primary.text
    ]
    return DispatchResult(primary=primary, alternatives=alternatives, failures=failures)


class ModelDispatcher:
    def __init__(self, client: ModelClient, default_model: str = DEFAULT_MODEL):
        self.client = client
        self.default_model = default_model

    async def _call(self, model: str, turn: ChatTurn, history: List[HistoryEntry]) -> ModelReply:
        try:
            return await self.client.generate(model, turn, history)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Model %s call raised: %s", model, exc)
            return ModelError(model=model, error=str(exc) or exc.__class__.__name__)

    async def dispatch(
        self,
        turn: ChatTurn,
        history: List[HistoryEntry],
        models: List[str],
    ) -> DispatchResult:
        if turn.is_empty:
            raise ValueError("Nothing to send")
        targets = normalize_model_list(models, self.default_model)
        replies = await asyncio.gather(*(self._call(model, turn, history) for model in targets))
        result = aggregate_replies(list(replies))
        logger.info(
            "Dispatch to %s: primary=%s alternatives=%d failures=%d",
            ",".join(targets),
            result.primary.model,
            len(result.alternatives),
            len(result.failures),
        )
        return result
