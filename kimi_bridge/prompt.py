from typing import Iterable, List, Mapping

ROLE_LABELS = {"user": "User"}
DEFAULT_ROLE_LABEL = "Model"


def build_contextual_prompt(history: Iterable[Mapping[str, str]], new_message: str) -> str:
    """Flatten the conversation into the single prompt string the upstream expects.

    >>> build_contextual_prompt([{"role": "user", "content": "2+2?"}, {"role": "assistant", "content": "4"}], "3+3?")
    'User: 2+2?\\nModel: 4\\nUser: 3+3?'
    """
    lines: List[str] = []
    for message in history:
        label = ROLE_LABELS.get(message.get("role"), DEFAULT_ROLE_LABEL)
        lines.append(f"{label}: {message.get('content', '')}")
    lines.append(f"User: {new_message}")
    return "\n".join(lines).strip()
