import os
import sys
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Import app from the correct location
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from main import app  # noqa: E402
from ethicsflow.core.config import ReviewPolicyConfig  # noqa: E402
from ethicsflow.core.role_matrix import Principal  # noqa: E402
from ethicsflow.core.roles import get_current_principal  # noqa: E402
from ethicsflow.core.submission_locks import SubmissionLockRegistry  # noqa: E402
from ethicsflow.services.workflow import EthicsWorkflow, build_workflow, get_workflow  # noqa: E402
from ethicsflow.services.workflow_events import WorkflowEventBus  # noqa: E402
from utils.fake_supabase import FakeSupabase  # noqa: E402

# === 全局测试配置 ===
# 中文注释:
# 1. 工作流测试全部跑在内存版 Supabase 上，不依赖真实数据库。
# 2. 配额在这里显式给出（Expedited=3 / Full Review=5），不读取环境变量。
# 3. JWT 令牌生成用于鉴权相关测试。

TEST_POLICY = ReviewPolicyConfig(
    quotas={"Exempted": 0, "Expedited": 3, "Full Review": 5},
    review_window_days=14,
    signed_url_ttl_seconds=3600,
    documents_bucket="research-documents",
)

OWNER_ID = "researcher-1"
STAFF_ID = "staff-1"
SECRETARIAT_ID = "secretariat-1"


class StubGenerator:
    """
    记录调用的批准文件生成器；fail_kinds 中的类型会抛异常。
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail_kinds: set[str] = set()

    def generate(self, kind, submission, reviews):
        self.calls.append(kind)
        if kind in self.fail_kinds:
            raise RuntimeError(f"renderer down for {kind}")
        return f"%PDF-1.4 {kind} {submission.get('id')} reviews={len(reviews)}".encode()


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def generator() -> StubGenerator:
    return StubGenerator()


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def workflow(fake_db, generator, events) -> EthicsWorkflow:
    bus = WorkflowEventBus()
    wf = build_workflow(
        client=fake_db,
        policy=TEST_POLICY,
        generator=generator,
        bus=bus,
        locks=SubmissionLockRegistry(),
    )
    for name in ("assignment_created", "revision_requested", "review_complete", "approved"):
        bus.subscribe(name, lambda event, payload: events.append((event, payload)))
    return wf


def make_principal(user_id: str, *roles: str) -> Principal:
    return Principal(id=user_id, roles=frozenset(roles))


@pytest.fixture
def researcher() -> Principal:
    return make_principal(OWNER_ID, "researcher")


@pytest.fixture
def other_researcher() -> Principal:
    return make_principal("researcher-2", "researcher")


@pytest.fixture
def staff() -> Principal:
    return make_principal(STAFF_ID, "staff")


@pytest.fixture
def secretariat() -> Principal:
    return make_principal(SECRETARIAT_ID, "secretariat")


@pytest.fixture
def reviewer_principal() -> Callable[[str], Principal]:
    return lambda reviewer_id: make_principal(reviewer_id, "reviewer")


@pytest.fixture
def seed_reviewers(fake_db) -> Callable[[int], list[str]]:
    def _seed(count: int, prefix: str = "reviewer") -> list[str]:
        ids = []
        for i in range(1, count + 1):
            rid = f"{prefix}-{i}"
            fake_db.seed(
                "user_profiles",
                {"id": rid, "email": f"{rid}@example.com", "full_name": f"Reviewer {rid}", "roles": ["reviewer"]},
            )
            ids.append(rid)
        return ids

    return _seed


@pytest.fixture
def seed_submission(fake_db) -> Callable[..., dict]:
    def _seed(status: str = "new_submission", classification: str | None = None, **extra) -> dict:
        now = datetime.now(timezone.utc).isoformat()
        row = {
            "tracking_code": "ERC-2026-ABCDEF01",
            "title": "Community health survey",
            "user_id": OWNER_ID,
            "college": "College of Nursing",
            "organization": None,
            "status": status,
            "classification_type": classification,
            "review_round": 1,
            "required_reviewers": None,
            "submitted_at": now,
            "updated_at": now,
        }
        row.update(extra)
        return fake_db.seed("submissions", row)[0]

    return _seed


@pytest.fixture
def seed_document(fake_db) -> Callable[..., dict]:
    def _seed(submission_id: str, document_type: str, revision_count: int = 0, **extra) -> dict:
        row = {
            "submission_id": submission_id,
            "document_type": document_type,
            "file_name": f"{document_type}.pdf",
            "file_url": f"{submission_id}/{document_type}/{revision_count}.pdf",
            "file_size": 10,
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
            "revision_count": revision_count,
        }
        row.update(extra)
        return fake_db.seed("uploaded_documents", row)[0]

    return _seed


def review_payload(protocol: str = "Approved (No Revision)", icf: str = "Approved (No Revision)", **extra) -> dict:
    payload = {
        "protocol_answers": {"q1": "yes"},
        "consent_answers": {"q1": "yes"},
        "protocol_recommendation": protocol,
        "protocol_ethics_recommendation": None,
        "icf_recommendation": icf,
        "icf_ethics_recommendation": None,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def payload() -> Callable[..., dict]:
    return review_payload


@pytest.fixture
def under_review(workflow, seed_submission, seed_reviewers, secretariat):
    """
    已分类并分配满审稿人的稿件：返回 (submission_id, reviewer_ids)。
    """

    def _make(classification: str = "Full Review", count: int | None = None):
        quota = TEST_POLICY.quota_for(classification)
        submission = seed_submission(status="classified", classification=classification)
        reviewers = seed_reviewers((count or quota) + 2)
        workflow.assignments.assign(secretariat, submission["id"], reviewers[: count or quota])
        return submission["id"], reviewers

    return _make


# === HTTP 层 ===


@pytest_asyncio.fixture
async def client() -> AsyncGenerator:
    """
    提供一个模拟的异步测试客户端
    """
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


@pytest.fixture
def api_as(workflow):
    """
    以指定 Principal 身份调用 API，并注入内存版工作流。
    """
    app.dependency_overrides[get_workflow] = lambda: workflow

    def _as(principal: Principal) -> None:
        app.dependency_overrides[get_current_principal] = lambda: principal

    yield _as
    app.dependency_overrides.pop(get_workflow, None)
    app.dependency_overrides.pop(get_current_principal, None)


def generate_test_token(user_id: str = "00000000-0000-0000-0000-000000000000", *, expired: bool = False) -> str:
    """
    生成用于测试的JWT令牌
    """
    secret = os.environ.get("SUPABASE_JWT_SECRET", "mock-secret-replace-later")
    now = datetime.now(timezone.utc)
    exp = now - timedelta(hours=1) if expired else now + timedelta(hours=1)
    payload = {
        "sub": user_id,
        "email": "test@example.com",
        "aud": "authenticated",
        "exp": exp,
        "iat": now - timedelta(hours=2) if expired else now,
        "role": "authenticated",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_token() -> str:
    return generate_test_token()


@pytest.fixture
def expired_token() -> str:
    return generate_test_token(expired=True)
