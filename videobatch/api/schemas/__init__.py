from .batch import (
    BatchSummary,
    ConsumerBatchRequest,
    EnterpriseBatchRequest,
    EnterpriseItem,
    TaskResponse,
    batch_detail,
    batch_list,
    parse_consumer_request,
    parse_enterprise_request,
)

__all__ = [
    "BatchSummary",
    "ConsumerBatchRequest",
    "EnterpriseBatchRequest",
    "EnterpriseItem",
    "TaskResponse",
    "batch_detail",
    "batch_list",
    "parse_consumer_request",
    "parse_enterprise_request",
]
