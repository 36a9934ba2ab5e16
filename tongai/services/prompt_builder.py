"""提示词构建

纯函数集合，不访问数据库也不做网络调用：
- build_prompt：按模式、学科、年级、语言拼出用户提示词
- build_user_message / build_solve_messages：组装发给模型的消息
- build_follow_up_messages：追问时截取历史上下文

学科来源在 API 边界处解析为 SubjectSource，这里只接收已经确定的前缀字符串。
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

MODE_NORMAL = "normal"
MODE_SOLVER = "solver"

DEFAULT_CONTEXT_LIMIT = 5
MIN_CONTEXT_LIMIT = 1
MAX_CONTEXT_LIMIT = 20

SYSTEM_PROMPT = (
    "You are a helpful and patient tutor. Solve the problem clearly, showing all steps. \n\n"
    "IMPORTANT FORMATTING RULES:\n"
    "1. If the subject is Math, you MUST output mathematical expressions using LaTeX format.\n"
    "2. Enclose inline math in single dollar signs like $E=mc^2$.\n"
    "3. Enclose block math in double dollar signs like $$\\frac{a}{b}$$.\n"
    "4. Do NOT use \\( \\) or \\[ \\] delimiters.\n"
    "5. Do NOT output raw LaTeX commands like \\sqrt{} without enclosing them in dollar signs.\n"
    "6. CRITICAL: Do NOT repeat the formula in plain text if you have provided the LaTeX version. "
    "For example, do not write 'x equals 2 ($x=2$)'. Just write '$x=2$'."
)

# 内置学科前缀（按语言、学科）
DEFAULT_PREFIXES: Dict[str, Dict[str, str]] = {
    "zh-cn": {
        "math": (
            "请一步步思考，详细列出计算步骤，并反复验证，确保结果精确。使用与当前年级所学知识匹配的解法解题。"
            "要有理解题目，步骤拆解，验证过程，结论表述，最终答案。这五个步骤，"
            "如果学生问了与学习无关或者其他科目问题，请拒绝回答，以下是题目："
        ),
        "chinese": (
            "请作为一位经验丰富的语文教育专家，针对我提供的文本或题目，进行全方位、深层次的解析。"
            "在文言文方面，请注重字词句翻译、文化背景与主旨的阐释；"
            "在阅读理解方面，请深入分析文章结构、修辞手法、表达技巧及文本主题的深刻内涵；"
            "在作文方面，请从审题立意、结构布局、论证思路或文学性等方面提供具体且可操作的指导建议和优化方向。"
            "请务必结合考点和学科核心素养，给出详尽、准确且富有启发性的专业解答。"
            "如果学生问了与学习无关或者其他科目问题，请拒绝回答，以下是题目："
        ),
        "english": (
            "请作为一位专业的英语语言学导师，全面分析我提供的英语文本或题目。"
            "在阅读理解方面，请重点剖析文章的主旨大意、段落逻辑关系、关键信息点及作者的隐含态度；"
            "在写作方面，请从主题表达、句式多样性、词汇准确性与高级运用、以及逻辑连贯性等方面，提供具体的优化建议和提升策略；"
            "在语法与词汇方面，请指出核心语法结构，并解释其在语境中的恰当用法。"
            "请确保您的解答准确、深入且具有实战指导意义。"
            "如果学生问了与学习无关或者其他科目问题，请拒绝回答，以下是题目："
        ),
    },
    "zh-tw": {
        "math": (
            "請一步步思考，詳細列出計算步驟，並反覆驗證，確保結果精確。使用與當前年級所學知識匹配的解法解題。"
            "要有理解題目，步驟拆解，驗證過程，結論表述，最終答案。這五個步驟，"
            "如果學生問了與學習無關或者其他科目問題，請拒絕回答，以下是題目："
        ),
        "chinese": (
            "請作為一位經驗豐富的語文教育專家，針對我提供的文本或題目，進行全方位、深層次的解析。"
            "在文言文方面，請注重字詞句翻譯、文化背景與主旨的闡釋；"
            "在閱讀理解方面，請深入分析文章結構、修辭手法、表達技巧及文本主題的深刻內涵；"
            "在作文方面，請從審題立意、結構佈局、論證思路或文學性等方面提供具體且可操作的指導建議和優化方向。"
            "請務必結合考點和學科核心素養，給出詳盡、準確且富有啟發性的專業解答。"
            "如果學生問了與學習無關或者其他科目問題，請拒絕回答，以下是題目："
        ),
        "english": (
            "請作為一位專業的英語語言學導師，全面分析我提供的英語文本或題目。"
            "在閱讀理解方面，請重點剖析文章的主旨大意、段落邏輯關係、關鍵信息點及作者的隱含態度；"
            "在寫作方面，請從主題表達、句式多樣性、詞彙準確性與高級運用、以及邏輯連貫性等方面，提供具體的優化建議和提升策略；"
            "在語法與詞彙方面，請指出核心語法結構，並解釋其在語境中的恰當用法。"
            "請確保您的解答準確、深入且具有實戰指導意義。"
            "如果學生問了與學習無關或者其他科目問題，請拒絕回答，以下是題目："
        ),
    },
    "en": {
        "math": (
            "Please think step by step, list every calculation in detail and verify it repeatedly "
            "so the result is exact. Use methods that match what the student has learned at the "
            "current grade. Cover five steps: understanding the problem, breaking it into steps, "
            "verification, a written conclusion and the final answer. If the student asks about "
            "something unrelated to study or about another subject, refuse to answer. "
            "Here is the problem: "
        ),
        "chinese": (
            "Please act as an experienced Chinese language teacher and give a thorough, in-depth "
            "analysis of the text or question I provide. For classical Chinese, focus on translating "
            "words and sentences and explaining the cultural background and main idea. For reading "
            "comprehension, analyse the structure, rhetorical devices, expressive techniques and the "
            "deeper meaning of the theme. For compositions, give concrete, actionable advice on "
            "interpreting the prompt, structure, argumentation or literary quality. Tie the answer to "
            "exam points and core competencies, and make it detailed, accurate and inspiring. If the "
            "student asks about something unrelated to study or about another subject, refuse to "
            "answer. Here is the problem: "
        ),
        "english": (
            "Please act as a professional English linguistics tutor and fully analyse the English text "
            "or question I provide. For reading comprehension, explain the main idea, the logical "
            "relationship between paragraphs, the key information and the author's implied attitude. "
            "For writing, give concrete suggestions on theme expression, sentence variety, accurate "
            "and advanced vocabulary and logical coherence. For grammar and vocabulary, point out the "
            "core structures and explain their proper use in context. Make sure the answer is "
            "accurate, deep and practical. If the student asks about something unrelated to study or "
            "about another subject, refuse to answer. Here is the problem: "
        ),
    },
}

# 旧版年级代码，未配置 Level 表时使用
LEGACY_GRADE_LABELS: Dict[str, Dict[str, str]] = {
    "zh-cn": {
        "1": "一年级", "2": "二年级", "3": "三年级",
        "4": "四年级", "5": "五年级", "6": "六年级",
        "7": "七年级", "8": "八年级", "9": "九年级",
    },
    "zh-tw": {
        "1": "一年級", "2": "二年級", "3": "三年級",
        "4": "四年級", "5": "五年級", "6": "六年級",
        "7": "七年級", "8": "八年級", "9": "九年級",
    },
    "en": {str(i): f"Grade {i}" for i in range(1, 10)},
}


def _language_family(language: str) -> str:
    return "en" if language == "en" else "zh"


def _default_prefix(subject_code: str, language: str) -> str:
    prefixes = DEFAULT_PREFIXES.get(language, DEFAULT_PREFIXES["zh-cn"])
    return prefixes.get(subject_code, prefixes["math"])


def level_suffix(level_label: str, language: str) -> str:
    """年级后缀，中文与英文语法不同"""
    if _language_family(language) == "en":
        return f" Solve using methods for {level_label}."
    return f" 用{level_label}的方法解答。"


def build_prompt(
    question: str,
    level_label: Optional[str],
    subject_code: str,
    mode: str,
    custom_prefix: Optional[str],
    language: str,
) -> str:
    """
    构建用户提示词

    Args:
        question: 学生输入的题目，可以为空
        level_label: 年级名称（如 "七年级"），为空则不加后缀
        subject_code: 学科代码
        mode: "normal" 原样透传；"solver" 加学科前缀与年级后缀
        custom_prefix: 管理员为学科配置的前缀，非空时优先使用
        language: zh-cn / zh-tw / en

    Returns:
        提示词文本
    """
    if mode != MODE_SOLVER:
        return question

    prefix = custom_prefix if custom_prefix else _default_prefix(subject_code, language)
    prompt = prefix + question
    if level_label:
        prompt += level_suffix(level_label, language)
    return prompt


def build_user_message(text: str, image_data: Optional[str] = None) -> Dict[str, Any]:
    """用户消息；带图片时为两段式内容，图片在前"""
    if not image_data:
        return {"role": "user", "content": text}

    return {
        "role": "user",
        "content": [
            {"type": "image_url", "image_url": {"url": image_data}},
            {"type": "text", "text": text},
        ],
    }


def build_solve_messages(prompt: str, image_data: Optional[str] = None) -> List[Dict[str, Any]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        build_user_message(prompt, image_data),
    ]


def clamp_context_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_CONTEXT_LIMIT
    return max(MIN_CONTEXT_LIMIT, min(MAX_CONTEXT_LIMIT, int(limit)))


def build_follow_up_messages(
    history: Iterable[Dict[str, Any]],
    new_text: str,
    context_limit: Optional[int] = DEFAULT_CONTEXT_LIMIT,
) -> List[Dict[str, Any]]:
    """
    追问消息：去掉历史中的 system 消息，保留最近 N 条，前置系统提示词并追加新问题

    不做 token 预算截断，单条长消息原样发送。
    """
    limit = clamp_context_limit(context_limit)
    conversation = [m for m in history if m.get("role") != "system"]
    recent = conversation[-limit:]

    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        *recent,
        {"role": "user", "content": new_text},
    ]


# ============================================================================
# 学科来源
# ============================================================================

@dataclass(frozen=True)
class ConfiguredSubject:
    """管理后台配置的学科"""
    code: str
    label: str
    prompt_prefix: Optional[str] = None


@dataclass(frozen=True)
class LegacySubject:
    """未在后台配置、只按代码走内置前缀的学科"""
    code: str


SubjectSource = Union[ConfiguredSubject, LegacySubject]


def resolve_subject_source(subject_code: str, subjects: Iterable[Any]) -> SubjectSource:
    """按代码在已启用学科中查找，找不到则视为旧版学科"""
    for subject in subjects:
        if subject.code == subject_code and getattr(subject, "is_active", True):
            return ConfiguredSubject(
                code=subject.code,
                label=subject.label,
                prompt_prefix=subject.prompt_prefix,
            )
    return LegacySubject(code=subject_code)


def resolve_custom_prefix(source: SubjectSource) -> str:
    """已配置学科返回其前缀（空白视为未配置），旧版学科返回空串"""
    if isinstance(source, ConfiguredSubject) and source.prompt_prefix and source.prompt_prefix.strip():
        return source.prompt_prefix
    return ""


def resolve_level_label(
    level_code: Optional[str], language: str, levels: Iterable[Any] = ()
) -> Optional[str]:
    """年级代码转名称：优先使用已启用的 Level 配置，其次旧版年级表，未知代码返回 None"""
    if not level_code:
        return None

    for level in levels:
        if level.code == level_code and getattr(level, "is_active", True):
            return level.label

    grades = LEGACY_GRADE_LABELS.get(language, LEGACY_GRADE_LABELS["zh-cn"])
    return grades.get(level_code)
