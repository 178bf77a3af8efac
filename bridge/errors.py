from typing import Optional


class BridgeError(Exception):
    """Базовая ошибка моста WHMCS ⇄ Discord"""


class TicketNotFoundError(BridgeError):
    """Тикет больше не существует в WHMCS"""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"Ticket {ticket_id} not found")


class TransientError(BridgeError):
    """Сетевая ошибка или таймаут удалённого вызова"""


class MalformedDataError(BridgeError):
    """Данные из удалённой системы не удалось разобрать"""


class MalformedReplyError(MalformedDataError):
    """У ответа нет ни replyid, ни id"""


class ConflictError(BridgeError):
    """Параллельная запись упёрлась в ограничение уникальности"""


class FatalError(BridgeError):
    """Ошибка, после которой процесс продолжать не может"""


class AuthenticationError(FatalError):
    """Удалённая система отклонила учётные данные"""


class RemoteApiError(BridgeError):
    """Удалённая система вернула ошибку"""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class WhmcsApiError(RemoteApiError):
    pass


class DiscordApiError(RemoteApiError):
    pass


class MissingInternalIdError(BridgeError):
    """Для тикета ещё не известен внутренний числовой ID WHMCS"""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__(f"Missing internal ID for ticket {ticket_id}")
