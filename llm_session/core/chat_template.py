"""
llm-session :: Chat Template

Render chat messages into a single prompt string with Jinja2.
Ships the ChatML layout used by Qwen-family GGUF models; a template
file beside the model overrides it.

INL - 2025
"""

import os
from typing import List, Dict, Optional


CHATML_TEMPLATE = (
    "{% for message in messages %}"
    "<|im_start|>{{ message['role'] }}\n{{ message['content'] }}<|im_end|>\n"
    "{% endfor %}"
    "{% if add_generation_prompt %}<|im_start|>assistant\n{% endif %}"
)


class ChatTemplate:
    """
    Chat template renderer.

    Wraps a Jinja2 template and renders messages into a prompt string.
    """

    def __init__(self, template_str: str = CHATML_TEMPLATE):
        from jinja2 import Template
        self.template = Template(template_str, keep_trailing_newline=True)

    def apply(
        self,
        messages: List[Dict[str, str]],
        add_generation_prompt: bool = True,
    ) -> str:
        """
        Render messages into a prompt string.

        Args:
            messages: [{"role": "user", "content": "..."}, ...]
            add_generation_prompt: append assistant turn marker

        Returns:
            formatted prompt string
        """
        return self.template.render(
            messages=messages,
            add_generation_prompt=add_generation_prompt,
        )

    @staticmethod
    def from_file(path: str) -> "ChatTemplate":
        """Load template from a .jinja file."""
        with open(path, "r", encoding="utf-8") as f:
            return ChatTemplate(f.read())


def build_chat_prompt(
    user_message: str,
    agent_name: str = "Assistant",
    template: Optional[ChatTemplate] = None,
) -> str:
    """System persona + one user turn, ready for generation."""
    template = template or ChatTemplate()
    messages = [
        {"role": "system", "content": f"You are {agent_name}, a helpful AI assistant."},
        {"role": "user", "content": user_message},
    ]
    return template.apply(messages, add_generation_prompt=True)


def find_chat_template(model_path: str) -> Optional[ChatTemplate]:
    """Look for chat_template.jinja next to a model file (or inside a model dir)."""
    model_dir = model_path if os.path.isdir(model_path) else os.path.dirname(model_path)
    for name in ("chat_template.jinja", "chat_template.j2"):
        path = os.path.join(model_dir, name)
        if os.path.exists(path):
            return ChatTemplate.from_file(path)
    return None
