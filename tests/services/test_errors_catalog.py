import pytest

from moodleupgrader.errors_catalog import actionable_error


def test_actionable_error_formats_message_with_suggested_action():
    message = actionable_error("downgrade_blocked", current_version="4.5.0", target_version="4.4.0")

    assert "Downgrade from 4.5.0 to 4.4.0 is not allowed." in message
    assert "Suggested action:" in message


def test_actionable_error_rejects_unknown_code():
    with pytest.raises(KeyError):
        actionable_error("not_a_code")
