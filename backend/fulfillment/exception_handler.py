"""
统一异常处理器。

挂到 DRF 的 EXCEPTION_HANDLER setting 上。
所有响应（无论成功还是失败）前端都能用同一套逻辑判断：
  response.type === 'validation_error' / 'block' / 'state_error' / 'network_error'  → 出问题了
  没有 type 字段  → 成功

统一错误响应格式：
{
    "type":    "validation_error" | "block" | "state_error" | "network_error",
    "code":    "NO_PROVIDER_SELECTED",
    "message": "Please select at least one pharmacy first.",
    "detail":  { ... },      // 可选
    "retryable": true        // 只有 network_error 带
}
"""

import logging

from django.http import JsonResponse
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.views import exception_handler as drf_default_handler

from .exceptions import BaseAppException, NetworkError, StateError

logger = logging.getLogger(__name__)

STATE_ERROR_MESSAGE = "This action is not available for the request in its current state."


def unified_exception_handler(exc, context):
    """
    DRF exception handler entry point.

    优先级：
    1. StateError → 记 warning（按钮守卫漏了），对外只给通用提示
    2. BaseAppException 及其子类 → 统一格式
    3. DRF 自带的 ValidationError（解析 body 失败等）→ 转成统一格式
    4. 其他异常 → 交给 DRF 默认处理
    """

    # --- 1. 非法状态迁移 ---
    if isinstance(exc, StateError):
        view = context.get('view') if context else None
        logger.warning(
            "[Lifecycle] rejected %s in %s: %s",
            exc.detail, type(view).__name__ if view else 'unknown view', exc.message,
        )
        return JsonResponse({
            'type': exc.type,
            'code': exc.code,
            'message': STATE_ERROR_MESSAGE,
            'detail': exc.detail,
        }, status=exc.http_status)

    # --- 2. 我们自己的异常体系 ---
    if isinstance(exc, BaseAppException):
        body = {
            'type': exc.type,
            'code': exc.code,
            'message': exc.message,
        }
        if exc.detail is not None:
            body['detail'] = exc.detail
        if isinstance(exc, NetworkError):
            body['retryable'] = exc.retryable
        return JsonResponse(body, status=exc.http_status)

    # --- 3. DRF 自带的 ValidationError ---
    if isinstance(exc, DRFValidationError):
        body = {
            'type': 'validation_error',
            'code': 'VALIDATION_ERROR',
            'message': 'Request validation failed',
            'detail': exc.detail,
        }
        return JsonResponse(body, status=400)

    # --- 4. 其他的交给 DRF 默认处理 ---
    return drf_default_handler(exc, context)
