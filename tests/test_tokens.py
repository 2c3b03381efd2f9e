from dispatch_center.constants import TRUNCATION_HINT
from dispatch_center.llm.tokens import estimate_tokens, safe_truncate


class TestEstimateTokens:
    def test_empty(self):
        assert estimate_tokens("") == 0

    def test_rounds_up(self):
        assert estimate_tokens("a") == 1
        assert estimate_tokens("abc") == 2
        assert estimate_tokens("abcd") == 3

    def test_chinese_counts_characters(self):
        assert estimate_tokens("剧本分析测试") == 4


class TestSafeTruncate:
    def test_short_text_unchanged(self):
        assert safe_truncate("hello", 10) == "hello"

    def test_exact_fit_unchanged(self):
        assert safe_truncate("x" * 50, 50) == "x" * 50

    def test_non_positive_length(self):
        assert safe_truncate("hello", 0) == ""
        assert safe_truncate("hello", -5) == ""

    def test_hint_does_not_fit(self):
        result = safe_truncate("x" * 100, 5)
        assert result == "xxxxx"

    def test_cuts_at_newline_near_end(self):
        text = "a" * 90 + "\n" + "b" * 100
        max_length = 100 + len(TRUNCATION_HINT)
        result = safe_truncate(text, max_length)
        assert result == "a" * 90 + TRUNCATION_HINT

    def test_cuts_after_sentence_end(self):
        text = "a" * 88 + "。" + "b" * 100
        result = safe_truncate(text, 100 + len(TRUNCATION_HINT))
        assert result == "a" * 88 + "。" + TRUNCATION_HINT

    def test_english_sentence_end(self):
        text = "a" * 85 + ". " + "b" * 100
        result = safe_truncate(text, 100 + len(TRUNCATION_HINT))
        assert result == "a" * 85 + "." + TRUNCATION_HINT

    def test_early_boundary_ignored(self):
        text = "a" * 10 + "\n" + "b" * 200
        result = safe_truncate(text, 100 + len(TRUNCATION_HINT))
        assert result == text[:100] + TRUNCATION_HINT

    def test_custom_hint(self):
        assert safe_truncate("x" * 20, 10, hint="…") == "x" * 9 + "…"

    def test_result_never_exceeds_max_length(self):
        text = ("第一句。\n" * 50) + "end"
        for max_length in range(1, 120):
            assert len(safe_truncate(text, max_length)) <= max_length
