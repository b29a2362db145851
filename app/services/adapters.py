"""Model adapter interface, cancellation token and the model registry."""

import base64
import logging
import mimetypes
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from app.services.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass
class Delta:
    """One incremental fragment of generated text."""

    text: str
    citations: Optional[List[Dict[str, Any]]] = None


@dataclass(frozen=True)
class ImageInput:
    """Image bytes captured for a turn, kept so the turn can be regenerated."""

    data: bytes
    mime_type: str
    filename: Optional[str] = None

    @classmethod
    def from_file(cls, file_path: str, mime_type: Optional[str] = None, filename: Optional[str] = None):
        with open(file_path, "rb") as fh:
            data = fh.read()
        if not mime_type:
            mime_type = mimetypes.guess_type(file_path)[0] or "application/octet-stream"
        return cls(data=data, mime_type=mime_type, filename=filename)

    def to_data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


class CancelToken:
    """Cancellation flag shared by the session, the relay and the adapter.

    A generation can be cancelled or sealed for completion, never both:
    whichever of ``cancel()`` and ``seal()`` runs first wins.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._cancelled = False
        self._sealed = False

    def cancel(self) -> bool:
        """Request a stop. Returns False if the generation was already sealed."""
        with self._lock:
            if self._sealed:
                return False
            self._cancelled = True
            return True

    def seal(self) -> bool:
        """Commit to completion. Returns False if a stop was already requested."""
        with self._lock:
            if self._cancelled:
                return False
            self._sealed = True
            return True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ModelAdapter(ABC):
    """Uniform streaming interface to a token-generating backend."""

    def __init__(self, model_id: str):
        self.model_id = model_id

    @abstractmethod
    def generate(
        self,
        prompt: str,
        history: Sequence[Dict[str, str]] = (),
        image: Optional[ImageInput] = None,
        params: Optional[Dict[str, Any]] = None,
        *,
        system: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Iterator[Delta]:
        """
        Stream a response for ``prompt`` given the prior conversation.

        Args:
            prompt: The new user message
            history: Prior messages as ``{"role", "content"}`` dicts, oldest first
            image: Optional image attached to the new user message
            params: Model parameters (temperature, topP, max_tokens, topK)
            system: System instructions for the conversation
            cancel: Token polled between deltas; once cancelled, no further
                deltas may be produced

        Yields:
            Delta fragments in production order

        Raises:
            AdapterError: On provider, auth, quota or transport failures
        """
        raise NotImplementedError


@dataclass
class ModelSpec:
    """Catalogue entry for a model exposed to clients."""

    id: str
    name: str
    provider: str  # 'OPENROUTER' or 'OPENAI'
    supports_vision: bool = False
    max_output_tokens: int = 4096
    supports_top_k: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def parameters(self) -> List[Dict[str, Any]]:
        """UI parameter descriptors for this model."""
        params = [
            {
                "key": "temperature",
                "label": "Temperature",
                "type": "slider",
                "min": 0,
                "max": 2 if self.provider == "OPENAI" else 1,
                "step": 0.01,
                "defaultValue": 0.7,
                "description": "Controls randomness. Lower for more predictable, higher for more creative.",
            },
            {
                "key": "topP",
                "label": "Top-P",
                "type": "slider",
                "min": 0,
                "max": 1,
                "step": 0.01,
                "defaultValue": 0.95,
                "description": "Nucleus sampling. Considers tokens with probability mass adding up to topP.",
            },
            {
                "key": "max_tokens",
                "label": "Max Tokens",
                "type": "slider",
                "min": 50,
                "max": min(self.max_output_tokens, 32000),
                "step": 50,
                "defaultValue": max(self.max_output_tokens // 4, 1024),
                "description": "Maximum number of tokens to generate in the completion.",
            },
        ]
        if self.supports_top_k:
            params.append(
                {
                    "key": "topK",
                    "label": "Top-K",
                    "type": "slider",
                    "min": 1,
                    "max": 100,
                    "step": 1,
                    "defaultValue": 40,
                    "description": "Considers the top K most probable tokens.",
                }
            )
        return params

    def to_config(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "supportsVision": self.supports_vision,
            "parameters": self.parameters(),
            "metadata": dict(self.metadata, max_output_tokens=self.max_output_tokens),
        }


AdapterFactory = Callable[[str], ModelAdapter]


class AdapterRegistry:
    """Maps model ids to adapter factories.

    Every ``resolve`` call builds a fresh adapter that belongs to the caller's
    session; the registry itself holds no per-request state.
    """

    def __init__(self):
        self._factories: Dict[str, AdapterFactory] = {}
        self._specs: Dict[str, ModelSpec] = {}

    def register(self, spec: ModelSpec, factory: AdapterFactory) -> None:
        self._factories[spec.id] = factory
        self._specs[spec.id] = spec
        logger.debug(f"Registered model {spec.id} ({spec.provider})")

    def resolve(self, model_id: str) -> ModelAdapter:
        """
        Build an adapter for ``model_id``.

        Raises:
            ValidationError: If the model id is empty or not registered
        """
        if not model_id or not model_id.strip():
            raise ValidationError("selectedModelId is a required parameter.")
        factory = self._factories.get(model_id)
        if factory is None:
            raise ValidationError(f"Model {model_id} is not available")
        return factory(model_id)

    def __contains__(self, model_id: str) -> bool:
        return model_id in self._factories

    def catalogue(self) -> List[Dict[str, Any]]:
        return [spec.to_config() for spec in self._specs.values()]
