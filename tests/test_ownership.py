import uuid

import pytest

from fieldjobs.schemas.jobs import Actor, ActorRole, JobStatus
from fieldjobs.services.errors import Forbidden
from fieldjobs.services.ownership import can_act, ensure_can_act, find_assignable, resolve_member_ids
from fieldjobs.services.transitions import TransitionRequest, apply_transition


def test_admin_can_act_on_any_job(make_job, admin):
    job = make_job(status="scheduled", assigned_to=uuid.uuid4())
    assert can_act(admin, job)


def test_assigned_tech_can_move_job_en_route(scheduled_job, make_tech):
    job, member = scheduled_job
    tech = make_tech(member)
    result = apply_transition(job, TransitionRequest(target=JobStatus.en_route), tech)
    assert result.job.status == JobStatus.en_route


def test_unassigned_tech_is_forbidden(scheduled_job, make_member, make_tech):
    job, _ = scheduled_job
    someone_else = make_member(name="Robin Tech", email="robin@example.com")
    tech = make_tech(someone_else, email="robin@example.com")
    assert not can_act(tech, job)
    with pytest.raises(Forbidden) as exc:
        apply_transition(job, TransitionRequest(target=JobStatus.en_route), tech)
    assert exc.value.message == "Job not assigned to you"


def test_tech_without_contact_email_fails_closed(scheduled_job, make_tech):
    job, member = scheduled_job
    tech = make_tech(member, email="")
    assert not can_act(tech, job)


def test_homeowner_cannot_mutate(scheduled_job, homeowner):
    job, _ = scheduled_job
    with pytest.raises(Forbidden):
        ensure_can_act(homeowner, job)


def test_system_actor_cannot_pass_the_guard(scheduled_job):
    job, _ = scheduled_job
    assert not can_act(Actor(id=None, role=ActorRole.system.value), job)


def test_find_assignable_matches_email_case_insensitively(db, make_member):
    member = make_member(email="Sam@Example.com")
    make_member(name="Retired", email="sam@example.com", active=False)
    assert find_assignable(db, "assessment", " sam@example.COM ") == frozenset({str(member.id)})
    assert find_assignable(db, "assessment", None) == frozenset()


def test_member_ids_span_both_pools(db, make_member, make_job, make_tech):
    assessor = make_member(kind="assessment")
    inspector = make_member(kind="inspection")
    ids = resolve_member_ids(db, "sam@example.com")
    assert ids == frozenset({str(assessor.id), str(inspector.id)})

    inspection = make_job(kind="inspection", status="scheduled", assigned_to=inspector.id)
    tech = Actor(id="t", role=ActorRole.field_tech.value, email="sam@example.com", member_ids=ids)
    assert can_act(tech, inspection)
