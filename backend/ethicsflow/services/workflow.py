from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional

from ethicsflow.core.config import ReviewPolicyConfig
from ethicsflow.core.submission_locks import SubmissionLockRegistry, submission_locks
from ethicsflow.lib.api_client import supabase_admin
from ethicsflow.services.artifact_service import ApprovalArtifactTrigger
from ethicsflow.services.assignment_service import ReviewerAssignmentManager
from ethicsflow.services.conflict_service import ConflictOfInterestResolver
from ethicsflow.services.consensus_service import ReviewConsensusEngine
from ethicsflow.services.document_generator import DocumentGenerator, ReportLabDocumentGenerator
from ethicsflow.services.document_visibility import DocumentAccessService
from ethicsflow.services.intake_service import IntakeService
from ethicsflow.services.notification_service import NotificationService, register_notification_subscribers
from ethicsflow.services.state_machine import SubmissionStateMachine
from ethicsflow.services.submission_store import SubmissionStore
from ethicsflow.services.workflow_events import WorkflowEventBus


@dataclass
class EthicsWorkflow:
    store: SubmissionStore
    policy: ReviewPolicyConfig
    bus: WorkflowEventBus
    intake: IntakeService
    documents: DocumentAccessService
    state_machine: SubmissionStateMachine
    assignments: ReviewerAssignmentManager
    consensus: ReviewConsensusEngine
    conflicts: ConflictOfInterestResolver
    artifacts: ApprovalArtifactTrigger


def build_workflow(
    *,
    client: Any = None,
    policy: Optional[ReviewPolicyConfig] = None,
    generator: Optional[DocumentGenerator] = None,
    bus: Optional[WorkflowEventBus] = None,
    locks: Optional[SubmissionLockRegistry] = None,
    notify: bool = True,
) -> EthicsWorkflow:
    """
    组装工作流各组件（同一个 client / 配置 / 事件总线 / 锁）。

    中文注释:
    - 测试里注入内存版 client 与自定义 generator；生产环境使用 supabase_admin 与 ReportLab。
    """
    client = client or supabase_admin
    policy = policy or ReviewPolicyConfig.from_env()
    bus = bus or WorkflowEventBus()
    locks = locks or submission_locks

    store = SubmissionStore(client)
    artifacts = ApprovalArtifactTrigger(
        store,
        generator or ReportLabDocumentGenerator(),
        policy,
        storage_client=client,
        locks=locks,
    )
    state_machine = SubmissionStateMachine(store, artifacts=artifacts, bus=bus, locks=locks)
    artifacts.complete_approval = state_machine.complete_approval
    assignments = ReviewerAssignmentManager(store, state_machine, policy, bus=bus, locks=locks)

    if notify:
        register_notification_subscribers(bus, notifications=NotificationService(client), store=store)

    return EthicsWorkflow(
        store=store,
        policy=policy,
        bus=bus,
        intake=IntakeService(store, policy, storage_client=client),
        documents=DocumentAccessService(store, policy, client=client),
        state_machine=state_machine,
        assignments=assignments,
        consensus=ReviewConsensusEngine(store, state_machine, policy, bus=bus, locks=locks),
        conflicts=ConflictOfInterestResolver(store, state_machine, assignments, policy, locks=locks),
        artifacts=artifacts,
    )


@lru_cache(maxsize=1)
def get_workflow() -> EthicsWorkflow:
    """
    FastAPI 依赖：进程内共享一个工作流实例（测试通过 dependency_overrides 替换）。
    """
    return build_workflow()
