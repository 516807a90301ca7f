"""Prompt templates for article rewriting."""

from textwrap import dedent


TITLE_PLACEHOLDER = "{{title}}"
CONTENT_PLACEHOLDER = "{{content}}"

REWRITE_SYSTEM_PROMPT = (
    "你是一个专业的内容创作者。你必须严格按照以下JSON格式返回改写结果，不要添加任何其他字段：\n"
    '{"title": "改写后的标题", "content": "改写后的HTML内容"}。\n'
    "只返回这个JSON对象，不要有任何其他内容。"
)

DEFAULT_PROMPT_TEMPLATE = dedent("""\
    你是一个专业的内容创作者。请改写以下文章。

    改写要求：
    - 保持原文的核心信息和观点
    - 使用更生动、更有吸引力的表达方式
    - 确保文章节奏紧凑，每段不超过3-4句话
    - 标题要有强烈的点击欲望
    - 内容使用HTML格式（<p>段落、<h2>小标题、<strong>强调等）

    重要：你必须严格按照以下JSON格式返回，不要有任何其他内容或字段：
    {
      "title": "改写后的标题",
      "content": "改写后的HTML格式内容"
    }

    原文标题：{{title}}
    原文内容：{{content}}""")


def compile_prompt(template: str, title: str, content: str) -> str:
    """
    Fill a rewrite template with the original article.

    Only the first {{title}} and the first {{content}} are replaced (title
    first, then content). The HTML is inserted unescaped. Placeholders that
    are missing from the template are simply not used, and extra ones stay
    as literal text.

    Args:
        template: Prompt template text
        title: Original article title
        content: Sanitized original article HTML

    Returns:
        Final user prompt

    Example:
        >>> compile_prompt("T={{title}} C={{content}}", "Hello", "<p>x</p>")
        'T=Hello C=<p>x</p>'
    """
    return template.replace(TITLE_PLACEHOLDER, title, 1).replace(CONTENT_PLACEHOLDER, content, 1)
