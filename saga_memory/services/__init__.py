from .ollama_client import OllamaChatClient
from .tokenizer import Tokenizer

__all__ = ["OllamaChatClient", "Tokenizer"]
