"""挖矿 / 结算错误分类

ConflictError、NotFoundError、ValidationError 不可重试；
TransientStorageError 表示数据库写入失败，可使用相同幂等键重试。
"""


class MiningError(Exception):
    kind = 'mining_error'
    status_code = 500
    retryable = False

    def __init__(self, message=None):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self):
        return {
            'success': False,
            'error': self.kind,
            'message': self.message,
            'retryable': self.retryable
        }


class ConflictError(MiningError):
    kind = 'conflict'
    status_code = 409


class AlreadyCompletedError(ConflictError):
    kind = 'already_completed'


class NotFoundError(MiningError):
    kind = 'not_found'
    status_code = 404


class TransientStorageError(MiningError):
    kind = 'transient_storage_error'
    status_code = 503
    retryable = True


class ValidationError(MiningError):
    kind = 'validation_error'
    status_code = 400
