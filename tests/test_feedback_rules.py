import pytest

from feedback_rules import star_display, summarize_ratings, validate_comment, validate_rating
from firm_errors import ValidationFailed


class TestValidation:

    @pytest.mark.parametrize("rating", [1, 3, 5])
    def test_rating_ok(self, rating):
        assert validate_rating(rating) == rating

    @pytest.mark.parametrize("rating", [0, 6, -1, True, "5", 4.5, None])
    def test_rating_rejected(self, rating):
        with pytest.raises(ValidationFailed, match="from 1 to 5"):
            validate_rating(rating)

    def test_comment_bounds(self):
        assert validate_comment("  ten chars!  ") == "ten chars!"
        assert len(validate_comment("x" * 2000)) == 2000
        with pytest.raises(ValidationFailed, match="at least 10"):
            validate_comment("too short")
        with pytest.raises(ValidationFailed, match="at least 10"):
            validate_comment(None)
        with pytest.raises(ValidationFailed, match="cannot exceed 2000"):
            validate_comment("x" * 2001)


class TestDisplay:

    def test_stars(self):
        assert star_display(4) == "⭐⭐⭐⭐☆"
        assert star_display(1) == "⭐☆☆☆☆"
        assert star_display(9) == "⭐" * 5

    def test_summary(self):
        summary = summarize_ratings({5: 3, 2: 1})
        assert summary.total == 4
        assert summary.average == 4.25
        assert summary.distribution == {1: 0, 2: 1, 3: 0, 4: 0, 5: 3}

    def test_empty_summary(self):
        summary = summarize_ratings({})
        assert summary.total == 0
        assert summary.average == 0.0
        assert sum(summary.distribution.values()) == 0
