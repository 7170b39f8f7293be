from models.contract import ContractStatus

TERMINAL_STATUSES = frozenset({ContractStatus.REJECTED, ContractStatus.EXPIRED, ContractStatus.REVOKED})

# Transitions reachable through rule evaluation.
RULE_TRANSITIONS: dict[ContractStatus, frozenset[ContractStatus]] = {
    ContractStatus.PENDING: frozenset({ContractStatus.APPROVED, ContractStatus.REJECTED}),
    ContractStatus.APPROVED: frozenset({ContractStatus.EXPIRED}),
}

REVOCABLE_STATUSES = frozenset({ContractStatus.PENDING, ContractStatus.APPROVED})


def as_status(value: ContractStatus | str) -> ContractStatus:
    if isinstance(value, ContractStatus):
        return value
    return ContractStatus(str(value))


def is_terminal(status: ContractStatus | str) -> bool:
    return as_status(status) in TERMINAL_STATUSES


def can_transition(old: ContractStatus | str, new: ContractStatus | str) -> bool:
    old_status, new_status = as_status(old), as_status(new)
    if new_status == ContractStatus.REVOKED:
        return old_status in REVOCABLE_STATUSES
    return new_status in RULE_TRANSITIONS.get(old_status, frozenset())
