"""Tests for threadfix.lib.validate."""

import pytest

from threadfix.lib.validate import ValidationError, validate


class TestValidate:
    def test_valid_review_view(self):
        validate({"reviews": [{"comments": [{"thread_id": "PRRT_1", "path": "a.py", "body": "x"}]}]}, "review_view")

    def test_missing_thread_id_reports_path(self):
        with pytest.raises(ValidationError) as exc:
            validate({"reviews": [{"comments": [{"path": "a.py", "body": "x"}]}]}, "review_view")
        assert exc.value.schema_name == "review_view"
        assert exc.value.path == "reviews.0.comments.0"

    def test_root_errors_use_root_path(self):
        with pytest.raises(ValidationError) as exc:
            validate({}, "review_view")
        assert exc.value.path == "(root)"

    def test_unknown_schema(self):
        with pytest.raises(ValidationError, match="Schema file not found"):
            validate({}, "does_not_exist")
