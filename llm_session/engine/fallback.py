"""
llm-session :: Fallback Responder

Stands in for ModelSession when no runtime is available. Same five
operations, rule-based canned replies, always reports itself loaded.

INL - 2025
"""

from typing import Optional

import numpy as np

from llm_session.core.config import SessionConfig
from llm_session.core.errors import ErrorKind, error_marker
from llm_session.core.logging import get_logger

logger = get_logger("llm_session.fallback")

# (keywords, reply); first match wins, checked against the lowercased prompt
RULES = [
    (("hello", "hi"), "Hello! I'm {agent}, your AI assistant. How can I help you today?"),
    (("how are you",), "I'm doing great, thank you for asking! I'm ready to assist you with any questions or tasks you have."),
    (("weather",), "I don't have access to current weather data right now, but I recommend checking your local weather app for the most accurate information."),
    (("time",), "I don't have access to the current time, but you can check your device's clock for the accurate time."),
    (("help",), "I'm here to help! I can assist with general questions, provide information, and have conversations with you. What would you like to know?"),
    (("name",), "I'm {agent}, an AI assistant designed to help you with various tasks and answer your questions."),
]

DEFAULT_REPLY = (
    "I understand you're asking about: {prompt}. I'm currently running in a fallback mode, "
    "but I'm here to help! Could you tell me more about what you'd like to know?"
)

IMAGE_REPLY = (
    "I can see you've shared an image with me! However, I'm currently running in a fallback "
    "mode with limited vision capabilities."
)


def _matches(text: str, keyword: str) -> bool:
    if " " in keyword:
        return keyword in text
    return keyword in text.replace("?", " ").replace("!", " ").replace(",", " ").replace(".", " ").split()


class FallbackResponder:
    """Canned-text implementation of the session contract."""

    supports_image_input = True

    def __init__(self, config: Optional[SessionConfig] = None):
        self.config = config or SessionConfig()

    def load(self, path: Optional[str], context_size: int = 0) -> bool:
        logger.info("Fallback: mock model loading")
        return True

    def generate(self, prompt: Optional[str], max_tokens: Optional[int] = None) -> str:
        if not isinstance(prompt, str) or not prompt:
            return error_marker(ErrorKind.INVALID_INPUT)
        logger.info(f"Fallback: generating mock response for: {prompt[:50]!r}")

        text = prompt.lower()
        agent = self.config.agent_name
        for keywords, reply in RULES:
            if any(_matches(text, k) for k in keywords):
                return reply.format(agent=agent)
        return DEFAULT_REPLY.format(prompt=prompt)

    def generate_with_image(
        self, prompt: Optional[str], image: bytes, max_tokens: Optional[int] = None,
    ) -> str:
        logger.info("Fallback: mock multimodal response")
        return IMAGE_REPLY

    def embed(self, prompt: Optional[str]) -> Optional[np.ndarray]:
        if not isinstance(prompt, str) or not prompt:
            return None
        return np.zeros(self.config.embedding_dim_fallback, dtype=np.float32)

    def free(self) -> None:
        logger.info("Fallback: mock model cleanup")

    def is_loaded(self) -> bool:
        return True
