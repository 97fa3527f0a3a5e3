from collections import Counter
from typing import Iterable, List, Sequence, Tuple

from .errors import PolicyError
from .models_scan import PolicyRule, SeverityPresenceRule, ThresholdRule
from .models_vuln import Finding, parse_severity


def count_by_severity(findings: Iterable[Finding]) -> Counter:
    return Counter(f.severity for f in findings)


def parse_fail_on_count(rule: str) -> ThresholdRule:
    """
    "SEVERITY:N"（例: HIGH:5）をパースする。N は 0 以上の整数。
    """
    idx = rule.rfind(":")
    if idx <= 0 or idx == len(rule) - 1:
        raise PolicyError("expected SEVERITY:N")

    sev_text = rule[:idx].strip()
    if not sev_text:
        raise PolicyError("expected SEVERITY:N")
    try:
        severity = parse_severity(sev_text)
    except ValueError as exc:
        raise PolicyError(str(exc)) from None

    num_text = rule[idx + 1:].strip()
    if not (num_text.isascii() and num_text.isdigit()):
        raise PolicyError("expected non-negative integer N in SEVERITY:N")
    return ThresholdRule(severity=severity, minimum=int(num_text))


def parse_fail_on_severities(names: Sequence[str]) -> List[SeverityPresenceRule]:
    rules: List[SeverityPresenceRule] = []
    for name in names:
        if not name.strip():
            continue
        try:
            rules.append(SeverityPresenceRule(parse_severity(name)))
        except ValueError as exc:
            raise PolicyError(str(exc)) from None
    return rules


def evaluate_rules(findings: Iterable[Finding], rules: Iterable[PolicyRule]) -> Tuple[bool, str]:
    counts = count_by_severity(findings)
    for rule in rules:
        count = counts[rule.severity]
        if isinstance(rule, SeverityPresenceRule):
            if count > 0:
                return True, (
                    f"Policy violated: found {count} {rule.severity} finding(s). "
                    "Fix these or adjust --fail-on-severity. See report in output-dir."
                )
        elif count >= rule.minimum:
            return True, (
                f"Policy violated: found {count} {rule.severity} finding(s) "
                f"(threshold: {rule.minimum}). "
                "Fix these or adjust --fail-on-count. See report in output-dir."
            )
    return False, ""


def evaluate(
    findings: Iterable[Finding],
    fail_on_severities: Sequence[str] = (),
    fail_on_count: str = "",
) -> Tuple[bool, str]:
    """
    CI ゲート判定。severity ルールを指定順に見て最初にヒットしたもので fail、
    次に件数ルール。ルール自体の書式不正も fail として扱う。
    """
    findings = list(findings)

    # 有効な名前を指定順に先に評価し、不正な名前はその後で報告する
    invalid: List[str] = []
    for name in fail_on_severities:
        try:
            presence = parse_fail_on_severities([name])
        except PolicyError as exc:
            invalid.append(str(exc))
            continue
        failed, reason = evaluate_rules(findings, presence)
        if failed:
            return failed, reason
    if invalid:
        return True, f"Invalid --fail-on-severity {list(fail_on_severities)!r}: {invalid[0]}."

    if fail_on_count and fail_on_count.strip():
        try:
            threshold = parse_fail_on_count(fail_on_count)
        except PolicyError as exc:
            return True, (
                f"Invalid --fail-on-count {fail_on_count!r}: {exc}. "
                "Use SEVERITY:N (e.g. HIGH:5)."
            )
        return evaluate_rules(findings, [threshold])

    return False, ""
