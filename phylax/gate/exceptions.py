"""
Module containing the exceptions that can be raised by the gate.
"""


class GateError(RuntimeError):
    """
    Base class for all gate errors.

    Every error carries the context required to reproduce or retry the failed
    operation without re-deriving state:

      detail: Human-readable description of what went wrong.
      ancestry: The ancestry name that was being processed, if known.
      stage: The workflow stage that failed, e.g. ``submit`` or ``poll``.
      status: The raw service status seen last, if any.

    Any additional keyword arguments are kept as extra context.
    """
    __seen__ = dict()

    #: The unique code for the error
    code = None
    #: The default message for the error
    message = None

    def __init_subclass__(cls):
        # Make sure that the code has not been used for another error
        if cls.code is None:
            return
        if cls.code in GateError.__seen__:
            message = 'code {} already in use by {}'.format(
                cls.code,
                GateError.__seen__[cls.code].__name__
            )
            raise TypeError(message)
        GateError.__seen__[cls.code] = cls

    def __init__(self, detail = None, *, ancestry = None, stage = None, status = None, **context):
        self.detail = detail
        self.ancestry = ancestry
        self.stage = stage
        self.status = status
        self.context = context
        super().__init__(detail)

    @property
    def data(self):
        """
        The context for the error as a dictionary, omitting unset values.
        """
        data = dict(
            detail = self.detail,
            ancestry = self.ancestry,
            stage = self.stage,
            status = self.status,
            **self.context
        )
        return { k: v for k, v in data.items() if v is not None }

    def __getattr__(self, name):
        # Extra context is available as attributes
        context = self.__dict__.get('context', {})
        try:
            return context[name]
        except KeyError:
            raise AttributeError(name)

    def __str__(self):
        message = self.message or self.__class__.__name__
        if self.detail:
            message = f'{message}: {self.detail}'
        where = ', '.join(
            f'{key} = {value}'
            for key, value in (('ancestry', self.ancestry), ('stage', self.stage))
            if value
        )
        if where:
            message = f'{message} ({where})'
        return message


class TransportError(GateError):
    """
    Raised when the scanning service cannot be reached or fails to respond sensibly.
    """
    code = 200
    message = "Scanning service unavailable"


class MalformedInputError(GateError):
    """
    Raised when a layer descriptor, image reference or request is invalid.
    """
    code = 210
    message = "Malformed input"


class ConflictError(GateError):
    """
    Raised when an ancestry name is resubmitted with a different set of layers.
    """
    code = 211
    message = "Ancestry conflict"


class ScanTimeoutError(GateError):
    """
    Raised when the deadline passes without a terminal scan result.
    """
    code = 220
    message = "Scan timed out"


class PolicyConfigError(GateError):
    """
    Raised when a policy has an invalid threshold or whitelist.
    """
    code = 230
    message = "Invalid policy configuration"


class PartialResultError(GateError):
    """
    Raised when the completeness signal from the service is inconsistent between calls.
    """
    code = 240
    message = "Inconsistent scan result"


class NotificationPendingError(GateError):
    """
    Raised when a notification is marked as processed before it has been drained.
    """
    code = 250
    message = "Notification not drained"
