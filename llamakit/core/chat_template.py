"""
llamakit :: Chat Template

Apply Jinja2 chat templates to messages for conversational models.
Conversation mode formats one message at a time: the rendered delta
between the history with and without the new message.

INL - 2025
"""

from typing import List, Dict

from jinja2 import Template


# Llama-3 instruct layout; used when the session does not supply a template.
DEFAULT_CHAT_TEMPLATE = (
    "{% for message in messages %}"
    "<|start_header_id|>{{ message['role'] }}<|end_header_id|>\n\n"
    "{{ message['content'] }}<|eot_id|>"
    "{% endfor %}"
    "{% if add_generation_prompt %}<|start_header_id|>assistant<|end_header_id|>\n\n{% endif %}"
)


class ChatTemplate:
    """
    Chat template renderer.

    Renders messages ([{"role": ..., "content": ...}]) into a prompt string.
    """

    def __init__(self, template_str: str = DEFAULT_CHAT_TEMPLATE):
        self.source = template_str
        self.template = Template(template_str)

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

    def format_single(
        self,
        history: List[Dict[str, str]],
        message: Dict[str, str],
        add_generation_prompt: bool,
    ) -> str:
        """Render only what appending `message` to `history` adds."""
        past = self.apply(history, add_generation_prompt=False) if history else ""
        full = self.apply(history + [message], add_generation_prompt=add_generation_prompt)
        if full.startswith(past):
            return full[len(past):]
        # template rewrote earlier turns; fall back to the full render
        return full

    @staticmethod
    def from_file(path: str) -> "ChatTemplate":
        """Load template from a .jinja file."""
        with open(path, "r", encoding="utf-8") as f:
            return ChatTemplate(f.read())
