"""
提示词构建测试

覆盖:
  - normal 模式原样透传
  - solver 模式前缀与年级后缀（三种语言）
  - 自定义前缀优先、未知学科回退数学前缀
  - 图片消息的两段式内容顺序
  - 追问上下文截取
  - 学科来源与年级名称解析
"""
from types import SimpleNamespace

import pytest
from hypothesis import given, strategies as st

from tongai.services.prompt_builder import (
    DEFAULT_PREFIXES,
    SYSTEM_PROMPT,
    ConfiguredSubject,
    LegacySubject,
    build_follow_up_messages,
    build_prompt,
    build_solve_messages,
    build_user_message,
    clamp_context_limit,
    resolve_custom_prefix,
    resolve_level_label,
    resolve_subject_source,
)

languages = st.sampled_from(["zh-cn", "zh-tw", "en"])
subjects = st.sampled_from(["math", "chinese", "english", "physics", ""])
modes = st.sampled_from(["normal", "solver"])
optional_text = st.one_of(st.none(), st.text(max_size=30))


class TestBuildPromptProperties:
    """build_prompt 属性测试"""

    @given(
        question=st.text(max_size=200),
        level=optional_text,
        subject=subjects,
        mode=modes,
        prefix=optional_text,
        language=languages,
    )
    def test_pure(self, question, level, subject, mode, prefix, language):
        """相同输入总是得到完全相同的输出"""
        first = build_prompt(question, level, subject, mode, prefix, language)
        second = build_prompt(question, level, subject, mode, prefix, language)
        assert first == second

    @given(
        question=st.text(max_size=200),
        level=optional_text,
        subject=subjects,
        prefix=optional_text,
        language=languages,
    )
    def test_normal_mode_passthrough(self, question, level, subject, prefix, language):
        """normal 模式忽略学科、年级和前缀"""
        assert build_prompt(question, level, subject, "normal", prefix, language) == question

    @given(question=st.text(max_size=200), language=languages)
    def test_solver_without_level_has_no_suffix(self, question, language):
        prompt = build_prompt(question, None, "math", "solver", "", language)
        assert prompt == DEFAULT_PREFIXES[language]["math"] + question


class TestSolverMode:
    """solver 模式具体输出"""

    def test_zh_cn_math_with_grade(self):
        q = "解方程 2x + 3 = 7"
        expected = DEFAULT_PREFIXES["zh-cn"]["math"] + q + " 用七年级的方法解答。"
        assert build_prompt(q, "七年级", "math", "solver", "", "zh-cn") == expected

    def test_zh_cn_math_prefix_text(self):
        prefix = DEFAULT_PREFIXES["zh-cn"]["math"]
        assert prefix.startswith("请一步步思考，详细列出计算步骤")
        assert prefix.endswith("以下是题目：")

    def test_zh_tw_suffix(self):
        prompt = build_prompt("題目", "八年級", "chinese", "solver", None, "zh-tw")
        assert prompt == DEFAULT_PREFIXES["zh-tw"]["chinese"] + "題目" + " 用八年級的方法解答。"

    def test_en_suffix(self):
        prompt = build_prompt("What is 2+2?", "Grade 3", "english", "solver", "", "en")
        assert prompt == DEFAULT_PREFIXES["en"]["english"] + "What is 2+2?" + " Solve using methods for Grade 3."

    def test_custom_prefix_wins(self):
        prompt = build_prompt("q", None, "physics", "solver", "物理老师：", "zh-cn")
        assert prompt == "物理老师：q"

    def test_unknown_subject_falls_back_to_math(self):
        prompt = build_prompt("q", None, "physics", "solver", "", "zh-cn")
        assert prompt == DEFAULT_PREFIXES["zh-cn"]["math"] + "q"

    def test_empty_question_gives_prefix_only(self):
        assert build_prompt("", None, "english", "solver", "", "zh-cn") == DEFAULT_PREFIXES["zh-cn"]["english"]


class TestMessages:
    """消息组装"""

    def test_text_message(self):
        assert build_user_message("hello") == {"role": "user", "content": "hello"}

    def test_image_part_comes_first(self):
        message = build_user_message("看图解题", "data:image/png;base64,AAAA")
        assert message["role"] == "user"
        assert message["content"] == [
            {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAAA"}},
            {"type": "text", "text": "看图解题"},
        ]

    def test_solve_messages_start_with_system_prompt(self):
        messages = build_solve_messages("prompt")
        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert messages[1] == {"role": "user", "content": "prompt"}


class TestFollowUp:
    """追问上下文截取"""

    @staticmethod
    def _history(count):
        return [
            {"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"}
            for i in range(count)
        ]

    def test_truncates_to_context_limit(self):
        history = self._history(12)
        messages = build_follow_up_messages(history, "new", 5)

        assert len(messages) == 7
        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert messages[1:6] == history[-5:]
        assert messages[6] == {"role": "user", "content": "new"}

    def test_strips_system_messages(self):
        history = [{"role": "system", "content": "old system"}] + self._history(3)
        messages = build_follow_up_messages(history, "new", 5)

        assert [m for m in messages if m["role"] == "system"] == [
            {"role": "system", "content": SYSTEM_PROMPT}
        ]
        assert messages[1:4] == history[1:]

    def test_short_history_kept_whole(self):
        history = self._history(2)
        assert build_follow_up_messages(history, "new", 5)[1:3] == history

    @pytest.mark.parametrize("limit,expected", [(0, 1), (-3, 1), (25, 20), (None, 5), (7, 7)])
    def test_clamp_context_limit(self, limit, expected):
        assert clamp_context_limit(limit) == expected

    @given(count=st.integers(min_value=0, max_value=40), limit=st.integers(min_value=1, max_value=20))
    def test_length_property(self, count, limit):
        messages = build_follow_up_messages(self._history(count), "new", limit)
        assert len(messages) == min(count, limit) + 2


class TestResolvers:
    """学科来源与年级名称"""

    def test_configured_subject_prefix(self):
        subjects = [SimpleNamespace(code="physics", label="物理", prompt_prefix="物理老师：", is_active=True)]
        source = resolve_subject_source("physics", subjects)
        assert source == ConfiguredSubject(code="physics", label="物理", prompt_prefix="物理老师：")
        assert resolve_custom_prefix(source) == "物理老师："

    def test_inactive_subject_is_legacy(self):
        subjects = [SimpleNamespace(code="physics", label="物理", prompt_prefix="x", is_active=False)]
        source = resolve_subject_source("physics", subjects)
        assert source == LegacySubject(code="physics")
        assert resolve_custom_prefix(source) == ""

    def test_blank_configured_prefix_is_empty(self):
        assert resolve_custom_prefix(ConfiguredSubject(code="math", label="数学", prompt_prefix="  ")) == ""

    def test_configured_level_label(self):
        levels = [SimpleNamespace(code="g7", label="初一", is_active=True)]
        assert resolve_level_label("g7", "zh-cn", levels) == "初一"

    def test_legacy_grade_map(self):
        assert resolve_level_label("7", "zh-cn") == "七年级"
        assert resolve_level_label("7", "zh-tw") == "七年級"
        assert resolve_level_label("3", "en") == "Grade 3"

    def test_unknown_level(self):
        assert resolve_level_label("99", "zh-cn") is None
        assert resolve_level_label(None, "en") is None
