import pytest

from imagereleaser.errors_catalog import actionable_error


def test_actionable_error_formats_message_with_suggested_action():
    message = actionable_error("push_failed", reference="registry.example.com/app:0.1.1")

    assert "Push of registry.example.com/app:0.1.1 failed." in message
    assert "Suggested action:" in message


def test_actionable_error_rejects_unknown_code():
    with pytest.raises(KeyError):
        actionable_error("nope")
