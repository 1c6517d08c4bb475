"""
Error classification for AWS service errors.

botocore raises a single ClientError type for every service failure; the
error code inside the response decides whether the call is worth retrying.
"""

from core.types import ErrorCategory

# AWS error code classifications (SQS, S3, Redshift Data API, STS)
AWS_ERROR_CODES = {
    "auth_errors": [
        "ExpiredToken",
        "ExpiredTokenException",
        "InvalidClientTokenId",
        "UnrecognizedClientException",
        "SignatureDoesNotMatch",
        "RequestExpired",
    ],
    "throttling_errors": [
        "Throttling",
        "ThrottlingException",
        "ThrottledException",
        "RequestLimitExceeded",
        "TooManyRequestsException",
        "ProvisionedThroughputExceededException",
        "SlowDown",
        "ActiveStatementsExceededException",
    ],
    "transient_errors": [
        "InternalError",
        "InternalFailure",
        "InternalServerException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "RequestTimeout",
        "RequestTimeoutException",
        "AWS.SimpleQueueService.ServiceUnavailable",
        "500",
        "502",
        "503",
        "504",
    ],
    "permanent_errors": [
        "AccessDenied",
        "AccessDeniedException",
        "ValidationException",
        "InvalidParameterValue",
        "InvalidParameterCombination",
        "ResourceNotFoundException",
        "NoSuchBucket",
        "NoSuchKey",
        "AWS.SimpleQueueService.NonExistentQueue",
        "QueueDoesNotExist",
        "ReceiptHandleIsInvalid",
        "400",
        "403",
        "404",
    ],
}


def classify_aws_error_code(error_code: str) -> ErrorCategory | None:
    """
    Classify an AWS error code into an error category.

    Args:
        error_code: ``response["Error"]["Code"]`` from a botocore ClientError

    Returns:
        ErrorCategory, or None when the code is not recognized
    """
    error_code = str(error_code).strip()

    if error_code in AWS_ERROR_CODES["auth_errors"]:
        return ErrorCategory.AUTH
    if error_code in AWS_ERROR_CODES["throttling_errors"]:
        return ErrorCategory.TRANSIENT
    if error_code in AWS_ERROR_CODES["transient_errors"]:
        return ErrorCategory.TRANSIENT
    if error_code in AWS_ERROR_CODES["permanent_errors"]:
        return ErrorCategory.PERMANENT
    return None


def is_throttling_code(error_code: str) -> bool:
    return str(error_code).strip() in AWS_ERROR_CODES["throttling_errors"]
