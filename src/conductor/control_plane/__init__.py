"""Control-plane public API."""

from conductor.control_plane.classifier import (
    Classification,
    ClassifierThresholds,
    classify_request,
)
from conductor.control_plane.feedback import build_rejection_feedback, escalation_evidence
from conductor.control_plane.plan_gate import PlanDecision, PlanPolicy, find_plan_proposal
from conductor.control_plane.requests import RequestHandle
from conductor.control_plane.runtime import Runtime, build_runtime
from conductor.control_plane.scheduler import Scheduler, SchedulerLimits

__all__ = [
    "Classification",
    "ClassifierThresholds",
    "PlanDecision",
    "PlanPolicy",
    "RequestHandle",
    "Runtime",
    "Scheduler",
    "SchedulerLimits",
    "build_rejection_feedback",
    "build_runtime",
    "classify_request",
    "escalation_evidence",
    "find_plan_proposal",
]
