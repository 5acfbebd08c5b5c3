"""Answer text cleanup: think-block handling, HTML stripping, whitespace."""
import re

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

_THINK_BLOCK = re.compile(r"<think>(.*?)</think>", re.DOTALL)
_UNCLOSED_THINK = re.compile(r"<think>(.*)$", re.DOTALL)
_HTML_TAG = re.compile(r"<[^>]+>")
_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_EXCESS_SPACES = re.compile(r"[ \t]+")


def extract_thinking(text: str) -> str | None:
    """Concatenated reasoning content, including an unfinished trailing block."""
    if not text or THINK_OPEN not in text:
        return None
    blocks = [block.strip() for block in _THINK_BLOCK.findall(text)]
    remainder = _THINK_BLOCK.sub("", text)
    unclosed = _UNCLOSED_THINK.search(remainder)
    if unclosed:
        blocks.append(unclosed.group(1).strip())
    thinking = "\n\n".join(block for block in blocks if block)
    return thinking or None


def _render_thinking(text: str) -> str:
    text = _THINK_BLOCK.sub(
        lambda m: f"\n\n**💭 思考過程：**\n\n{m.group(1).strip()}\n\n---\n\n", text
    )
    return _UNCLOSED_THINK.sub(
        lambda m: f"\n\n**💭 思考過程（不完整）：**\n\n{m.group(1).strip()}\n\n---\n\n", text
    )


def _drop_thinking(text: str) -> str:
    return _UNCLOSED_THINK.sub("", _THINK_BLOCK.sub("", text))


def clean_answer(
    text: str,
    *,
    show_thinking: bool = True,
    strip_html: bool = True,
    max_length: int | None = None,
) -> str:
    if not text:
        return ""

    text = _render_thinking(text) if show_thinking else _drop_thinking(text)

    if strip_html:
        text = _HTML_TAG.sub("", text)

    text = _EXCESS_NEWLINES.sub("\n\n", text)
    text = _EXCESS_SPACES.sub(" ", text)
    text = text.strip()

    if max_length is not None and len(text) > max_length:
        text = text[:max_length].rstrip()
    return text
