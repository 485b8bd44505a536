class MalformedMessageError(ValueError):
    """A queue payload is missing required fields; it is dropped, not retried."""


class EmailDeliveryError(Exception):
    """SMTP or network failure while talking to the mail provider."""
