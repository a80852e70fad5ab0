"""
Failure taxonomy for upload jobs.

Two families:
  Port signals: raised by the browser adapter (WaitTimeout,
                ControlNotInteractable). Only ControlNotInteractable is
                ever retried, and only around the submit click.
  JobFailure:   fatal for the job. Caught at the worker's top level and
                turned into status=failed with a readable progress message.
"""

CLICK_HINT = (
    "A button on the page was not clickable. The website layout may have "
    "changed or an overlay was present."
)


class PortError(Exception):
    """Base class for errors raised by the browser automation adapter."""


class WaitTimeout(PortError):
    """A bounded wait (selector, navigation, condition) elapsed."""


class ControlNotInteractable(PortError):
    """The control exists but cannot receive a click yet."""


class JobFailure(Exception):
    """Fatal condition for a single job."""


class AuthenticationFailed(JobFailure):
    pass


class DisplayNotFound(JobFailure):
    pass


class UploadControlDisabled(JobFailure):
    pass


class ClickRetriesExhausted(JobFailure):
    pass


class ConfirmationTimeout(JobFailure):
    pass


class PortalReportedError(JobFailure):
    pass


def is_click_problem(exc: BaseException) -> bool:
    """Return True if the failure is about a control that would not take a click."""
    if isinstance(exc, (ClickRetriesExhausted, ControlNotInteractable)):
        return True
    if isinstance(exc, JobFailure):
        return False
    text = str(exc).lower()
    return "click" in text or "clickable" in text


def describe_failure(exc: BaseException, selector: str = "") -> str:
    """Build the progress message shown to the job owner for a fatal error."""
    if is_click_problem(exc):
        message = CLICK_HINT
        if selector:
            message += f" (Selector: {selector})"
    else:
        message = str(exc) or exc.__class__.__name__
    return f"An error occurred: {message}"
