# classify.py
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .model import Classification, FailureKind


@dataclass(frozen=True)
class Rule:
    """
    A substring / regex match on captured output.

    `on_success=True` lets a rule fail a step whose process exited 0
    (tools that print errors but still return 0).
    """
    pattern: str
    kind: FailureKind
    reason: str = ""
    on_success: bool = False

    def matches(self, text: str) -> bool:
        return re.search(self.pattern, text, flags=re.IGNORECASE | re.MULTILINE) is not None


# Output signatures shared by every step, checked after step-specific rules.
COMMON_RULES: List[Rule] = [
    Rule(r"timed out|connection (reset|refused|timed out)", FailureKind.TRANSIENT, "network"),
    Rule(r"could not resolve host|temporary failure in name resolution", FailureKind.TRANSIENT, "dns"),
    Rule(r"could not get lock|dpkg.*lock", FailureKind.TRANSIENT, "package_lock"),
    Rule(r"HTTP error 5\d\d|503 Service Unavailable|429 Too Many Requests", FailureKind.TRANSIENT, "remote_busy"),
    Rule(r"QuotaExceeded|quota.*exceeded|SkuNotAvailable", FailureKind.FATAL, "quota"),
    Rule(r"AuthorizationFailed|InvalidAuthenticationToken|Please run 'az login'", FailureKind.FATAL, "provider_auth"),
    Rule(r"Key was rejected by service|Required key not available", FailureKind.ENVIRONMENT, "secure_boot_blocked"),
    Rule(r"undefined symbol", FailureKind.ENVIRONMENT, "abi_mismatch"),
    Rule(r"No module named|ModuleNotFoundError", FailureKind.ENVIRONMENT, "missing_module"),
    Rule(r"version mismatch|requires .*but you have", FailureKind.ENVIRONMENT, "runtime_version_mismatch"),
    Rule(r"cannot open shared object file", FailureKind.ENVIRONMENT, "missing_library"),
]


class Classifier:
    """
    Maps (exit_code, stdout, stderr) to a Classification.

    Step rules are tried before COMMON_RULES. A non-zero exit with no match
    falls back to `default`.
    """

    def __init__(
        self,
        rules: Iterable[Rule] = (),
        *,
        default: FailureKind = FailureKind.ENVIRONMENT,
        include_common: bool = True,
    ):
        self.rules = list(rules)
        if include_common:
            self.rules.extend(COMMON_RULES)
        self.default = default

    def __call__(self, exit_code: Optional[int], stdout: str, stderr: str) -> Optional[Classification]:
        text = f"{stdout}\n{stderr}"
        failed = exit_code != 0

        for rule in self.rules:
            if not failed and not rule.on_success:
                continue
            if rule.matches(text):
                return Classification(rule.kind, rule.reason)

        if failed:
            return Classification(self.default, f"exit_{exit_code}" if exit_code is not None else "no_exit")
        return None


DEFAULT_CLASSIFIER = Classifier()


def rule(pattern: str, kind: FailureKind | str, reason: str = "", *, on_success: bool = False) -> Rule:
    """DSL helper: rule('undefined symbol', 'environment', 'abi_mismatch')."""
    return Rule(pattern=pattern, kind=FailureKind(kind), reason=reason, on_success=on_success)
