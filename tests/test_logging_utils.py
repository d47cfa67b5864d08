import logging

from gitops_deploy.logging_utils import RedactingFilter, redact, register_secret


def test_short_values_are_not_registered() -> None:
    register_secret("abc")

    assert redact("abc abc") == "abc abc"


def test_filter_masks_formatted_message() -> None:
    register_secret("hooks-secret-path")
    record = logging.LogRecord(
        name="gitops_deploy.notifier",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="POST %s",
        args=("https://hooks.example.com/hooks-secret-path",),
        exc_info=None,
    )

    assert RedactingFilter().filter(record) is True
    assert record.getMessage() == "POST https://hooks.example.com/***"
