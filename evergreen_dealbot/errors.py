class DealbotError(Exception):
    pass


class ConfigError(DealbotError):
    pass


# Connection failures and timeouts. Retried at the client before surfacing.
class TransportError(DealbotError):
    pass


# The FIL-SPID token could not be produced. Retried like any transport failure.
class AuthError(TransportError):
    pass


class RpcError(DealbotError):
    def __init__(self, method: str, code: int, message: str):
        super().__init__(f"{method} failed with code {code}: {message}")
        self.method = method
        self.code = code
        self.message = message


class ProtocolError(DealbotError):
    pass


class RetrievalError(DealbotError):
    pass


class RetrievalTimeout(RetrievalError):
    pass


class ProposalTimeout(DealbotError):
    pass


class CommitError(DealbotError):
    pass
