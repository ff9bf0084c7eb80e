class FlowError(Exception):
    """Erro estrutural do interpretador. `code` é o identificador estável exposto na API."""

    code = "FlowError"

    def __init__(self, message: str = None):
        super().__init__(message or self.code)
        self.message = message or self.code


class FlowNotFound(FlowError):
    code = "FlowNotFound"


class EmptyFlow(FlowError):
    code = "EmptyFlow"


class DisconnectedStart(FlowError):
    code = "DisconnectedStart"


class InvalidNodeContent(FlowError):
    code = "InvalidNodeContent"


class ConversationNotFound(FlowError):
    code = "ConversationNotFound"


class NodeNotFound(FlowError):
    code = "NodeNotFound"


class NoActiveSession(FlowError):
    code = "NoActiveSession"


class ConcurrentResume(FlowError):
    """Outra execução alterou a sessão entre a leitura e a escrita."""
    code = "ConcurrentResume"


class ConnectionNotFound(FlowError):
    code = "ConnectionNotFound"
