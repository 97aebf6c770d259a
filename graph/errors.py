class RouterError(Exception):
    """Base class for topic router failures."""


class RoutingModelError(RouterError):
    """The routing model call failed or returned an unusable payload. Always recovered."""


class TopicPersistenceError(RouterError):
    """
    Writing a topic row failed.

    Every message must be attributable to a topic, so this aborts the turn.
    Callers report a transient failure and let the user retry.
    """

    def __init__(self, message: str, conversation_id: str = None):
        super().__init__(message)
        self.conversation_id = conversation_id
