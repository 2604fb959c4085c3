# API module - Generation backends
# One capability shape: generate_once / generate_stream, secrets from env only

from .client import LLMConfig, MockLLMClient, OpenAICompatibleClient

__all__ = ["LLMConfig", "MockLLMClient", "OpenAICompatibleClient"]
