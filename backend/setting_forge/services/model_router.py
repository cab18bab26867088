"""Model configuration lookup and per-round route resolution."""
import logging
from typing import Any, Callable, Optional
from pydantic import BaseModel, Field
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_openai import ChatOpenAI

from setting_forge.config import settings
from setting_forge.errors import ModelConfigError


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_ID = "default"


class ModelConfig(BaseModel):
    """A private (per-user) or shared-pool model configuration."""
    model_config = {"protected_namespaces": ()}

    config_id: str
    provider: str = "openai"
    model_name: str
    api_key: str = ""
    base_url: Optional[str] = None
    public: bool = False
    input_credits_per_1k: float = 1.0
    output_credits_per_1k: float = 2.0
    tags: list[str] = Field(default_factory=list)


class ModelRoute(BaseModel):
    """The model a round talks to, resolved once per round."""
    model_config = {"frozen": True, "protected_namespaces": ()}

    config_id: str
    provider: str
    model_name: str
    api_key: str = Field(default="", repr=False)
    base_url: Optional[str] = None
    public: bool = False
    input_credits_per_1k: float = 1.0
    output_credits_per_1k: float = 2.0

    def describe(self) -> dict[str, Any]:
        """Route fields that are safe to keep in session metadata."""
        return {
            "config_id": self.config_id,
            "provider": self.provider,
            "model_name": self.model_name,
            "public": self.public,
        }


ChatModelFactory = Callable[[ModelRoute, float], BaseChatModel]


def openai_chat_model(route: ModelRoute, temperature: float) -> BaseChatModel:
    """Build a LangChain chat model for an OpenAI-compatible route."""
    return ChatOpenAI(
        model=route.model_name,
        api_key=route.api_key or settings.openai_api_key,
        base_url=route.base_url,
        temperature=temperature,
    )


class ModelRouter:
    """Resolves private and shared-pool routes and builds chat models for them."""

    def __init__(self, model_factory: ChatModelFactory | None = None):
        self._private: dict[tuple[str, str], ModelConfig] = {}
        self._public: dict[str, ModelConfig] = {}
        self.model_factory = model_factory or openai_chat_model

    def register_private(self, user_id: str, config: ModelConfig):
        self._private[(user_id, config.config_id)] = config

    def register_public(self, config: ModelConfig):
        self._public[config.config_id] = config.model_copy(update={"public": True})

    def load_defaults(self):
        """Register the system model and any PUBLIC_MODELS entries."""
        self.register_public(ModelConfig(
            config_id=DEFAULT_CONFIG_ID,
            model_name=settings.openai_model,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            tags=["jsonify"],
        ))
        for raw in settings.public_models:
            try:
                self.register_public(ModelConfig.model_validate(raw))
            except ValueError as e:
                logger.warning("Skipping invalid public model config %s: %s", raw.get("config_id"), e)

    def resolve(self, user_id: str, config_id: Optional[str], use_public_pool: bool) -> ModelRoute:
        """Pick the route for one round. Raises ModelConfigError when nothing matches."""
        if use_public_pool:
            config = self._public.get(config_id or DEFAULT_CONFIG_ID)
            if config is None:
                raise ModelConfigError(f"Public model config not found: {config_id}")
        else:
            config = self._private.get((user_id, config_id or DEFAULT_CONFIG_ID))
            if config is None and (config_id is None or config_id == DEFAULT_CONFIG_ID):
                # Users without a private key fall back to the system model
                config = self._public.get(DEFAULT_CONFIG_ID)
            if config is None:
                raise ModelConfigError(f"Model config not found for user {user_id}: {config_id}")
        return ModelRoute(
            config_id=config.config_id,
            provider=config.provider,
            model_name=config.model_name,
            api_key=config.api_key,
            base_url=config.base_url,
            public=config.public,
            input_credits_per_1k=config.input_credits_per_1k,
            output_credits_per_1k=config.output_credits_per_1k,
        )

    def extraction_route(self, route: ModelRoute) -> ModelRoute:
        """Same credentials, optionally a cheaper model for structured extraction."""
        if settings.extraction_model and route.provider == "openai":
            return route.model_copy(update={"model_name": settings.extraction_model})
        return route

    def chat_model(self, route: ModelRoute, temperature: float = 0.7) -> BaseChatModel:
        return self.model_factory(route, temperature)
