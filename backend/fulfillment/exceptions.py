"""
统一异常体系。

所有业务异常继承 BaseAppException，包含：
- type:        错误类型标识（validation_error / block / state_error / network_error / persistence_error）
- code:        业务错误码（ALREADY_BILLED / ILLEGAL_TRANSITION / BACKEND_REJECTED / ...）
- message:     人类可读的描述
- detail:      可选的附加信息（dict / list / None）
- http_status: HTTP 状态码

核心层只需 raise，exception_handler 统一捕获并格式化响应。
PersistenceError 例外：它只在 drafts 层内部流转，调用方捕获后只记日志。
"""


class BaseAppException(Exception):
    """所有业务异常的基类。"""

    type = 'error'
    code = 'UNKNOWN_ERROR'
    http_status = 500

    def __init__(self, message, code=None, detail=None, http_status=None):
        self.message = message
        if code is not None:
            self.code = code
        if http_status is not None:
            self.http_status = http_status
        self.detail = detail
        super().__init__(message)


class ValidationError(BaseAppException):
    """前置条件不满足（没选 provider、没选 item、lab 多选等）。不会发到后端，400。"""

    type = 'validation_error'
    code = 'VALIDATION_ERROR'
    http_status = 400


class BlockError(BaseAppException):
    """业务规则阻止操作（已出账单、提交进行中、请求不存在）。409。"""

    type = 'block'
    code = 'BUSINESS_BLOCK'
    http_status = 409


class StateError(BaseAppException):
    """
    非法的状态迁移。

    出现即说明 UI 的按钮守卫漏了。message 里写明 from → to，
    detail 带 {'from': ..., 'to': ...}，请求状态保持不变。
    """

    type = 'state_error'
    code = 'ILLEGAL_TRANSITION'
    http_status = 409

    def __init__(self, current, target, message=None, **kwargs):
        self.current = current
        self.target = target
        current_value = getattr(current, 'value', current)
        target_value = getattr(target, 'value', target)
        super().__init__(
            message or f"Illegal transition {current_value} -> {target_value}.",
            detail={'from': current_value, 'to': target_value},
            **kwargs,
        )


class NetworkError(BaseAppException):
    """
    后端调用失败（连接失败、超时、响应无法解析）。

    retryable=True：服务器状态没有被改变，调用方可以重试。
    """

    type = 'network_error'
    code = 'BACKEND_UNAVAILABLE'
    http_status = 502
    retryable = True


class BackendRejectedError(NetworkError):
    """后端返回了 {success: false, message}。可恢复，不是致命错误。"""

    code = 'BACKEND_REJECTED'


class PersistenceError(BaseAppException):
    """草稿存储失败（Redis 不可用 / 序列化失败）。只记日志，永远不给用户看。"""

    type = 'persistence_error'
    code = 'DRAFT_STORAGE_ERROR'
    http_status = 500
