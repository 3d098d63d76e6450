from mirrord.transfer.executor import TransferExecutor
from mirrord.transfer.retry import RetryPolicy, default_is_retryable

__all__ = ["TransferExecutor", "RetryPolicy", "default_is_retryable"]
