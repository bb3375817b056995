import logging

from django.core.exceptions import ObjectDoesNotExist
from rest_framework import status
from rest_framework.exceptions import APIException, ValidationError
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)


class ApiError(APIException):
    """Business error carrying an HTTP status and a machine readable code."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = 'api_error'

    def __init__(self, message, *, code=None, status_code=None):
        super().__init__(detail=message, code=code or self.default_code)
        self.error_code = code or self.default_code
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = 'not_found'


class ForbiddenError(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = 'forbidden'


class ConflictError(ApiError):
    status_code = status.HTTP_409_CONFLICT
    default_code = 'conflict'


def api_exception_handler(exc, context):
    if isinstance(exc, ObjectDoesNotExist):
        return Response({'ok': False, 'error': {'code': 'not_found', 'message': str(exc) or 'not found'}}, status=404)
    resp = drf_exception_handler(exc, context)
    if resp is None:
        logger.exception('Unhandled error in %s', getattr(context.get('view'), '__name__', context.get('view')))
        return Response({'ok': False, 'error': {'code': 'server_error', 'message': str(exc)}}, status=500)
    if isinstance(exc, ApiError):
        return Response({'ok': False, 'error': {'code': exc.error_code, 'message': str(exc.detail)}}, status=resp.status_code)
    # normalize response
    if isinstance(exc, ValidationError):
        return Response({'ok': False, 'error': {'code': 'validation_error', 'message': resp.data}}, status=resp.status_code)
    if isinstance(resp.data, dict):
        detail = resp.data.get('detail') or resp.data
    else:
        detail = str(resp.data)
    code = getattr(exc, 'default_code', None) or 'api_error'
    return Response({'ok': False, 'error': {'code': code, 'message': detail}}, status=resp.status_code)
