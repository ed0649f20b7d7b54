"""
Agentflow - Webhook Ingress
===========================

Authenticates provider webhooks and normalizes their payloads into Facts.

Setup (GitHub):
1. Repo -> Settings -> Webhooks -> Add webhook
2. Payload URL: https://your-domain/webhooks/github
3. Content type: application/json
4. Secret: same value as ``webhook_secret`` in .pipeline/config.yaml
5. Events: Pull requests, Pull request reviews, Check suites

Only branches carrying the integration prefix are acted upon; everything
else is acknowledged and ignored with a reason.
"""

import hashlib
import hmac
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

from agentflow.core.config import PipelineConfig
from agentflow.core.reactions.facts import Fact, FactKind


# ==========================================================================
# Signature Verification
# ==========================================================================

class SignatureCheck(str, Enum):
    OK = "ok"
    MISSING = "missing"
    INVALID = "invalid"
    SKIPPED = "skipped"


def compute_signature(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> SignatureCheck:
    """Check ``sha256=<hex>`` against an HMAC-SHA256 of the raw body."""
    if not secret:
        return SignatureCheck.SKIPPED
    if not signature:
        return SignatureCheck.MISSING
    if not hmac.compare_digest(compute_signature(secret, body), signature):
        return SignatureCheck.INVALID
    return SignatureCheck.OK


def body_digest(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()[:16]


# ==========================================================================
# Normalization
# ==========================================================================

@dataclass(frozen=True)
class Normalized:
    """Either a fact to process or the reason the event is ignored."""
    fact: Optional[Fact] = None
    reason: Optional[str] = None

    @classmethod
    def ignored(cls, reason: str) -> "Normalized":
        return cls(reason=reason)


class Normalizer(Protocol):
    event_header: str
    signature_header: str

    def normalize(self, event: str, payload: Any, digest: str) -> Normalized: ...


_ISSUE_BRANCH = re.compile(r"^issue/(\d+)")


def _get(payload: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(payload, dict):
            return None
        payload = payload.get(key)
    return payload


class GitHubNormalizer:
    event_header = "X-GitHub-Event"
    signature_header = "X-Hub-Signature-256"

    def __init__(self, integration_prefix: str):
        self.integration_prefix = integration_prefix

    def in_scope(self, branch: str) -> bool:
        return bool(branch) and branch.startswith(self.integration_prefix)

    def _details(self, branch: str, **extra: Any) -> Dict[str, Any]:
        name = branch[len(self.integration_prefix):]
        match = _ISSUE_BRANCH.match(name)
        details = {k: v for k, v in extra.items() if v is not None}
        if match:
            details["issue_number"] = int(match.group(1))
        return details

    def normalize(self, event: str, payload: Any, digest: str) -> Normalized:
        handler = self._handlers().get(event)
        if handler is None:
            return Normalized.ignored(f"event type: {event or 'missing'}")
        return handler(payload, digest)

    def _handlers(self) -> Dict[str, Callable[[Any, str], Normalized]]:
        return {
            "ping": lambda payload, digest: Normalized.ignored("ping"),
            "pull_request": self._pull_request,
            "pull_request_review": self._pull_request_review,
            "check_suite": self._check_suite,
        }

    def _pull_request(self, payload: Any, digest: str) -> Normalized:
        pr = _get(payload, "pull_request")
        if _get(payload, "action") != "closed" or not _get(pr, "merged"):
            return Normalized.ignored("not a merged PR")

        branch = _get(pr, "head", "ref") or ""
        if not self.in_scope(branch):
            return Normalized.ignored("not an integration branch")

        sha = _get(pr, "merge_commit_sha") or ""
        return Normalized(fact=Fact(
            kind=FactKind.PR_MERGED,
            branch=branch,
            pr_number=_get(pr, "number"),
            actor=_get(pr, "merged_by", "login"),
            source_id=sha or digest,
            base_branch=_get(pr, "base", "ref"),
            details=self._details(
                branch,
                merge_commit_sha=sha or None,
                pr_url=_get(pr, "html_url"),
            ),
        ))

    def _pull_request_review(self, payload: Any, digest: str) -> Normalized:
        if _get(payload, "action") != "submitted":
            return Normalized.ignored("not a submitted review")

        pr = _get(payload, "pull_request")
        branch = _get(pr, "head", "ref") or ""
        if not self.in_scope(branch):
            return Normalized.ignored("not an integration branch")

        state = str(_get(payload, "review", "state") or "").lower()
        kinds = {
            "changes_requested": FactKind.REVIEW_CHANGES_REQUESTED,
            "approved": FactKind.REVIEW_APPROVED,
        }
        if state not in kinds:
            return Normalized.ignored(f"review state: {state}")

        review_id = _get(payload, "review", "id")
        return Normalized(fact=Fact(
            kind=kinds[state],
            branch=branch,
            pr_number=_get(pr, "number"),
            actor=_get(payload, "review", "user", "login"),
            source_id=str(review_id) if review_id is not None else digest,
            base_branch=_get(pr, "base", "ref"),
            details=self._details(branch, review_body=_get(payload, "review", "body")),
        ))

    def _check_suite(self, payload: Any, digest: str) -> Normalized:
        suite = _get(payload, "check_suite")
        conclusion = _get(suite, "conclusion") or ""
        branch = _get(suite, "head_branch") or ""
        if not conclusion or not branch:
            return Normalized.ignored("incomplete check_suite data")
        if not self.in_scope(branch):
            return Normalized.ignored("not an integration branch")

        if conclusion == "success":
            kind = FactKind.CI_PASSED
        elif conclusion in ("failure", "timed_out"):
            kind = FactKind.CI_FAILED
        else:
            return Normalized.ignored(f"conclusion: {conclusion}")

        suite_id = _get(suite, "id")
        sha = _get(suite, "head_sha")
        source = f"{suite_id}:{conclusion}" if suite_id is not None else (sha or digest)
        pull_requests = _get(suite, "pull_requests") or []
        pr_number = _get(pull_requests[0], "number") if pull_requests else None
        return Normalized(fact=Fact(
            kind=kind,
            branch=branch,
            pr_number=pr_number,
            source_id=source,
            details=self._details(branch, sha=sha, conclusion=conclusion),
        ))


NORMALIZERS: Dict[str, Callable[[PipelineConfig], Normalizer]] = {
    "github": lambda config: GitHubNormalizer(config.branch.integration_prefix),
}


def build_normalizers(config: PipelineConfig) -> Dict[str, Normalizer]:
    return {name: factory(config) for name, factory in NORMALIZERS.items()}
