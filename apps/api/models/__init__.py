from .access_log import AccessLogEntry  # noqa: F401
from .audit import AuditTrailEntry  # noqa: F401
from .contract import ConsentContract, ContractRule  # noqa: F401
from .party import Patient, User  # noqa: F401
