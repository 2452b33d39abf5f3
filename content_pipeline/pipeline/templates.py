"""
提示词模板注册表

TemplateId -> 模板骨架，纯字符串替换，无网络依赖。
模板中的 ``{name}`` 为占位符：必填变量缺失时立即抛出 MissingTemplateVariable；
可选变量缺失时整行省略，不会把字面量占位符发给模型。
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Sequence

from ..errors import MissingTemplateVariable
from .models import RetrievalResult

# 解析器依赖的分隔符契约，必须出现在多产物模板中
NOTE_DELIMITER = "---###$$$###---"

_PLACEHOLDER_RE = re.compile(r"\{([a-z_]+)\}")


class TemplateId(str, Enum):
    SHORT_NOTES = "short_notes"
    LONG_NOTES = "long_notes"
    CURATE_EXAMPLES = "curate_examples"
    OUTLINE = "outline"
    TITLES = "titles"
    IMAGE = "image"


@dataclass(frozen=True)
class PromptTemplate:
    """提示词模板：系统提示 + 正文骨架 + 必填变量 + 默认值。"""

    system: str
    body: str
    required: tuple[str, ...] = ("topic",)
    defaults: Mapping[str, str] = field(default_factory=dict)


_NOTES_SYSTEM = (
    "You are an expert social media content creator and viral growth strategist. "
    "You excel at creating engaging, viral social media posts."
)

TEMPLATES: dict[TemplateId, PromptTemplate] = {
    TemplateId.SHORT_NOTES: PromptTemplate(
        system=_NOTES_SYSTEM,
        body="""Act as a top Substack growth strategist with 10+ years experience creating viral content. Generate {note_count} high-impact notes using this framework:

**Newsletter Context**
- Theme: {topic}
- Core Topics: {key_points}
- Target Audience: {audience}
- Primary Intent: {intent}

{examples}

**Creation Guidelines**
1. Hook Formula: Open with "Did you know?" / "Here's why X matters" / Controversial truth / Surprising statistic
2. Value Structure: Problem > Agitate > Solution > Proof
3. Viral Elements: leverage curiosity gaps and social proof, include actionable takeaways
4. Platform Optimization: 280-300 character sweet spot, 3-4 short paragraphs, single-line breaks

**Output Requirements**
- Vary hooks and angles across notes
- Include 1 unexpected twist per note
- Separate each note with the following separator: {delimiter}
- Output ONLY the notes and the separator, no other text. Do not number the notes.
- Output each sentence on a new line.""",
        defaults={"note_count": "4"},
    ),
    TemplateId.LONG_NOTES: PromptTemplate(
        system=_NOTES_SYSTEM,
        body="""Act as a seasoned Substack creator who consistently goes viral with impactful notes.
Write {note_count} long-form notes on the theme below. Long-form notes are educational, personal and share a story.

**Newsletter Context**
- Theme: {topic}
- Core Topics: {key_points}
- Target Audience: {audience}
- Primary Intent: {intent}
- Target Length: about {word_count} words per note

{examples}

**Output Requirements**
- Each note starts with a strong hook of at most 10 words, followed by a re-hook in the first sentence
- Optimistic but grounded in reality, no empty inspiration
- Do not end a note with a question
- Separate each note with the following separator: {delimiter}
- Output ONLY the notes and the separator, no other text. Do not number the notes.""",
        defaults={"note_count": "2", "word_count": "300"},
    ),
    TemplateId.CURATE_EXAMPLES: PromptTemplate(
        system="You are an experienced newsletter editor who knows which notes resonate with readers.",
        body="""Below are candidate reference notes retrieved for the theme "{topic}".
Target Audience: {audience}

{examples}

Select the {select_count} candidates that would best inspire new, high-performing notes on this theme.
Copy each selected candidate verbatim.
Separate each selected candidate with the following separator: {delimiter}
Output ONLY the selected candidates and the separator, no commentary.""",
        required=("topic", "examples"),
        defaults={"select_count": "3"},
    ),
    TemplateId.OUTLINE: PromptTemplate(
        system=(
            "You are an expert content strategist and outline creator. You excel at creating "
            "well-structured, engaging outlines for viral blog posts."
        ),
        body="""Act as a master content architect and editorial director, the best in the world at writing viral, engaging Substack posts.
Create a {format} outline using:

**Strategic Foundation**
- Primary Goal: {intent}
- Audience Knowledge Level: {knowledge_level}
- Target Audience: {audience}
- Key Points to Address: {key_points}

**Content Core**
- Central Theme: "{topic}"
- Target Length: {word_count} words
- Content Style: {tone}

**Output Requirements**
1. Title Options (3 viral headline variants)
2. Meta Description (160 chars)
3. Detailed Section Framework: Introduction (Hook + Context), Main Body (3-5 key sections), Conclusion + Call to Action
4. Key Data Points to Include
5. Engagement Hooks (Open Loops / Story Elements)

Format the outline with clear hierarchical structure using markdown.""",
        defaults={"format": "long-form post", "audience": "General audience", "word_count": "1500"},
    ),
    TemplateId.TITLES: PromptTemplate(
        system="You are an email marketing expert achieving 60%+ open rates for large newsletters.",
        body="""Generate {title_count} title options for a Substack post about {topic}.
Focus on: {main_ideas}

**Core Principles**
1. Prioritize clarity over cleverness, never confuse readers
2. Balance value proposition with curiosity triggers
3. Mix long-form value titles, current-event hooks, short bold statements and a few strategic curiosity titles
4. Never use ALL CAPS or excessive punctuation

Output ONLY the titles, one per line, no other text. Don't indicate the method used along with each title. Don't number the titles.""",
        defaults={"title_count": "13"},
    ),
    TemplateId.IMAGE: PromptTemplate(
        system="",
        body="""{topic}
Style: {tone}""",
    ),
}


def get_template(template_id: TemplateId | str) -> PromptTemplate:
    return TEMPLATES[TemplateId(template_id)]


def system_prompt_for(template_id: TemplateId | str) -> str:
    return get_template(template_id).system


def render_examples(examples: Sequence[RetrievalResult]) -> str:
    """将检索结果渲染为带编号的参考样例块。"""
    if not examples:
        return ""
    blocks = ["**Reference notes that performed well**"]
    for index, item in enumerate(examples, start=1):
        blocks.append(f"Example {index}:\n{item.example.text.strip()}")
    return "\n\n".join(blocks)


def assemble(
    template_id: TemplateId | str,
    variables: Mapping[str, Optional[str]],
    examples: Sequence[RetrievalResult] = (),
) -> str:
    """
    渲染提示词

    Args:
        template_id: 模板 ID
        variables: 用户输入变量（None / 空白视为未提供）
        examples: 检索得到的参考样例

    Returns:
        渲染后的提示词正文

    Raises:
        MissingTemplateVariable: 必填变量缺失
    """
    tid = TemplateId(template_id)
    template = TEMPLATES[tid]

    values: dict[str, str] = dict(template.defaults)
    for key, value in variables.items():
        if value is None:
            continue
        text = str(value).strip()
        if text:
            values[key] = text
    values.setdefault("delimiter", NOTE_DELIMITER)
    rendered_examples = render_examples(examples)
    if rendered_examples:
        values["examples"] = rendered_examples

    for name in template.required:
        if name not in values:
            raise MissingTemplateVariable(tid.value, name)

    lines: list[str] = []
    for line in template.body.splitlines():
        names = _PLACEHOLDER_RE.findall(line)
        if any(name not in values for name in names):
            continue
        lines.append(_PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], line))

    # 省略行后可能留下连续空行
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()
