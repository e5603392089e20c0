from typing import NamedTuple
from enum import Enum
import resource


class LimitType(Enum):
	Files = resource.RLIMIT_NOFILE


# Darwin reports huge hard limits that lead to OverflowErrors, so we
# cap what we ask for.
REASONABLE_LIMITS: dict[LimitType, int] = {
	LimitType.Files: 10 * 10240,
}


class Limit(NamedTuple):
	type: LimitType
	soft: int
	hard: int


def limit(scope: LimitType) -> Limit:
	return Limit(scope, *resource.getrlimit(scope.value))


def unlimit(
	scope: LimitType, ratio: float = 1.0, *, maximum: int | None = 0
) -> int | bool:
	"""Raises the soft limit for the given scope towards its hard limit,
	returning the new soft limit or `False` when it could not be changed."""
	lm = limit(scope)
	if lm.soft == resource.RLIM_INFINITY:
		return lm.soft
	maximum = REASONABLE_LIMITS.get(scope) if maximum == 0 else maximum
	hard: int = lm.hard if lm.hard != resource.RLIM_INFINITY else (maximum or lm.soft)
	target = int(lm.soft + ratio * (hard - lm.soft))
	if maximum:
		target = min(maximum, target)
	# We never lower an existing limit
	target = max(target, lm.soft)
	try:
		resource.setrlimit(scope.value, (target, lm.hard))
		return target
	except ValueError:
		return False
	except OSError:
		return False


# EOF
