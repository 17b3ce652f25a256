"""
Typed errors for the wallet, escrow and milestone workflow.

They subclass APIException so a rejection raised deep inside a service
function reaches the API client with its specific reason and status.
"""
from rest_framework import status
from rest_framework.exceptions import APIException


class MarketplaceError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Request could not be completed.'
    default_code = 'marketplace_error'


class NotFound(MarketplaceError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Not found.'
    default_code = 'not_found'


class Unauthorized(MarketplaceError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'You are not allowed to perform this action.'
    default_code = 'unauthorized'


class NotAJobParticipant(Unauthorized):
    default_detail = 'Only the client or the awarded freelancer can do this.'
    default_code = 'not_a_job_participant'


class InsufficientFunds(MarketplaceError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    default_detail = 'Insufficient wallet balance.'
    default_code = 'insufficient_funds'


class InsufficientEscrow(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Escrow does not hold enough funds.'
    default_code = 'insufficient_escrow'


class AlreadyPaid(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Payment has already been released.'
    default_code = 'already_paid'


class AlreadyCompleted(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Milestone is already completed.'
    default_code = 'already_completed'


class AlreadyReviewed(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'A review has already been submitted.'
    default_code = 'already_reviewed'


class InvalidState(MarketplaceError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Operation not allowed in the current state.'
    default_code = 'invalid_state'


class ValidationError(MarketplaceError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Invalid input.'
    default_code = 'validation_error'


class GatewayError(MarketplaceError):
    status_code = status.HTTP_502_BAD_GATEWAY
    default_detail = 'Payment provider request failed.'
    default_code = 'gateway_error'
