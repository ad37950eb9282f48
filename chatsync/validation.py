"""Message content validation.

Runs on the send path before anything is written locally, and again in
the remote store's gatekeeper.
"""

from chatsync.errors import InvalidMessageError

MAX_MESSAGE_LENGTH = 10_000


def validate_message_text(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> str:
    """Validate message text and return it unchanged.

    Raises:
        InvalidMessageError: If the text is blank or longer than max_length
            once surrounding whitespace is removed.
    """
    trimmed = text.strip()
    if not trimmed:
        raise InvalidMessageError("Message cannot be empty")
    if len(trimmed) > max_length:
        raise InvalidMessageError(f"Message is too long (max {max_length:,} characters)")
    return text
