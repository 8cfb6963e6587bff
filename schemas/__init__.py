from schemas.project import CommitmentCreate, ProjectCreate
from schemas.settlement import CheckRepaymentRequest, WithdrawRequest

__all__ = [
    "CheckRepaymentRequest",
    "CommitmentCreate",
    "ProjectCreate",
    "WithdrawRequest",
]
