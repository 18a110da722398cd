from rest_framework import status
from rest_framework.exceptions import APIException


class DuplicateDocumentNumber(APIException):
    """Raised when a document number is already taken; the request can be retried"""
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'A document with this number already exists. Retry without a number to get a fresh one.'
    default_code = 'duplicate_number'
