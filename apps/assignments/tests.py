from datetime import datetime, timedelta, timezone as dt_timezone
from unittest import mock

from django.contrib.auth.models import User
from django.core import mail
from django.db import DatabaseError
from django.test import TestCase
from rest_framework.test import APIClient

from apps.accounts.models import Department, Organization, OrganizationMember, Role
from apps.assignments import reminders, services
from apps.assignments.models import Assignment, AssignmentStatus, ReminderFireRecord
from apps.assignments.tasks import reconcile_assignment_counts_task
from apps.core.exceptions import AssignmentResolutionError, AssignmentStateError, SurveyEngineError
from apps.responses.models import ResponseStatus, SurveyResponse
from apps.surveys.models import Survey, SurveyBlock, SurveyQuestion, QuestionType
from apps.surveys.services import publish

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=dt_timezone.utc)


def published_survey(code="pulse"):
    survey = Survey.objects.create(code=code, title="Engagement Pulse")
    block = SurveyBlock.objects.create(survey=survey, title="Main", sort_order=1)
    SurveyQuestion.objects.create(
        block=block, code="team", title="Team", type=QuestionType.SINGLE_SELECT,
        sort_order=1, options=["Engineering", "Operations"], required=True,
    )
    publish(survey)
    return survey


class AssignmentFixtureMixin:
    def setUp(self):
        self.org = Organization.objects.create(name="TechForward Solutions")
        self.other_org = Organization.objects.create(name="Pacific Coast University")
        self.eng = Department.objects.create(organization=self.org, name="Engineering")
        self.alice = User.objects.create_user(username="alice", email="alice@techforward.io", password="p")
        self.bob = User.objects.create_user(username="bob", email="bob@techforward.io", password="p")
        self.carol = User.objects.create_user(username="carol", email="carol@pcu.edu", password="p")
        OrganizationMember.objects.create(organization=self.org, user=self.alice, department=self.eng, job_role="Developer")
        OrganizationMember.objects.create(organization=self.org, user=self.bob, job_role="Manager")
        OrganizationMember.objects.create(organization=self.other_org, user=self.carol)
        self.survey = published_survey()

    def assign(self, users=(), orgs=(), depts=(), start=None, end=None, **kwargs):
        kwargs.setdefault("now", NOW)
        return services.create_assignment(
            self.survey,
            services.AssignmentTargets(users=users, organizations=orgs, departments=depts),
            services.AssignmentWindow(start, end),
            **kwargs,
        )


class AssignmentServiceTests(AssignmentFixtureMixin, TestCase):
    def test_recipients_are_deduplicated(self):
        assignment = self.assign(users=[self.alice.id, self.carol.id], orgs=[self.org.id], depts=[self.eng.id])
        self.assertEqual(services.resolve_recipients(assignment), {self.alice.id, self.bob.id, self.carol.id})
        self.assertEqual(
            services.resolve_recipients(assignment, organization_id=self.org.id), {self.alice.id, self.bob.id},
        )

    def test_membership_changes_are_picked_up(self):
        assignment = self.assign(depts=[self.eng.id])
        self.assertEqual(services.resolve_recipients(assignment), {self.alice.id})

        OrganizationMember.objects.filter(user=self.bob).update(department=self.eng)
        OrganizationMember.objects.filter(user=self.alice).update(is_active=False)
        self.assertEqual(services.resolve_recipients(assignment), {self.bob.id})

    def test_unresolved_targets_keep_a_draft(self):
        with self.assertRaises(AssignmentResolutionError) as ctx:
            self.assign(users=[self.alice.id], orgs=[self.org.id, 9999], depts=[8888], activate=True)
        self.assertEqual(ctx.exception.unresolved, {"assignedOrganizations": [9999], "assignedDepartments": [8888]})

        assignment = Assignment.objects.get()
        self.assertEqual(ctx.exception.assignment, assignment)
        self.assertEqual(assignment.status, AssignmentStatus.DRAFT)
        self.assertEqual(assignment.unresolved_targets, {"assignedOrganizations": [9999], "assignedDepartments": [8888]})
        self.assertEqual(list(assignment.assigned_organizations.values_list("id", flat=True)), [self.org.id])

        with self.assertRaises(AssignmentStateError):
            services.transition(assignment, AssignmentStatus.ACTIVE, now=NOW)

    def test_only_published_surveys_can_be_assigned(self):
        draft = Survey.objects.create(code="draft", title="Draft")
        with self.assertRaises(SurveyEngineError):
            services.create_assignment(draft, services.AssignmentTargets(users=[self.alice.id]), services.AssignmentWindow())

    def test_binds_latest_version(self):
        publish(self.survey)
        assignment = self.assign(users=[self.alice.id])
        self.assertEqual(assignment.survey_version.version, 2)

    def test_status_graph(self):
        assignment = self.assign(orgs=[self.org.id], end=NOW + timedelta(days=10), activate=True)
        self.assertEqual(assignment.status, AssignmentStatus.ACTIVE)

        with self.assertRaises(AssignmentStateError):
            services.transition(assignment, AssignmentStatus.DRAFT, now=NOW)
        services.transition(assignment, AssignmentStatus.PAUSED, now=NOW)
        services.transition(assignment, AssignmentStatus.ACTIVE, now=NOW)
        services.transition(assignment, AssignmentStatus.COMPLETED, now=NOW)
        with self.assertRaises(AssignmentStateError):
            services.transition(assignment, AssignmentStatus.ACTIVE, now=NOW)
        assignment.refresh_from_db()
        self.assertEqual(assignment.status, AssignmentStatus.COMPLETED)

    def test_activation_needs_recipients(self):
        empty = Department.objects.create(organization=self.org, name="Legal")
        assignment = self.assign(depts=[empty.id])
        self.assertEqual(assignment.status, AssignmentStatus.DRAFT)
        with self.assertRaises(AssignmentStateError):
            services.transition(assignment, AssignmentStatus.ACTIVE, now=NOW)

    def test_activation_after_window_closed_fails(self):
        assignment = self.assign(users=[self.alice.id], end=NOW - timedelta(hours=1))
        with self.assertRaises(AssignmentStateError):
            services.transition(assignment, AssignmentStatus.ACTIVE, now=NOW)

    def test_advance_statuses(self):
        scheduled = self.assign(users=[self.alice.id], start=NOW + timedelta(days=1), end=NOW + timedelta(days=8))
        self.assertEqual(scheduled.status, AssignmentStatus.SCHEDULED)
        running = self.assign(users=[self.bob.id], end=NOW + timedelta(days=2), activate=True)

        counts = services.advance_statuses(NOW + timedelta(days=1, hours=1))
        self.assertEqual(counts, {"activated": 1, "completed": 0, "stalled": 0})

        counts = services.advance_statuses(NOW + timedelta(days=3))
        self.assertEqual(counts, {"activated": 0, "completed": 1, "stalled": 0})
        running.refresh_from_db()
        scheduled.refresh_from_db()
        self.assertEqual(running.status, AssignmentStatus.COMPLETED)
        self.assertEqual(scheduled.status, AssignmentStatus.ACTIVE)

    def test_reminder_policy_is_normalised(self):
        assignment = self.assign(users=[self.alice.id], reminder_policy={"daysBeforeDeadline": [1, 7, 3, 7]})
        self.assertEqual(assignment.reminder_schedule["daysBeforeDeadline"], [7, 3, 1])
        self.assertEqual(assignment.reminder_schedule["frequency"], "weekly")
        with self.assertRaises(SurveyEngineError):
            self.assign(users=[self.alice.id], reminder_policy={"daysBeforeDeadline": [-1]})

    def test_assignments_for_user(self):
        mine = self.assign(depts=[self.eng.id], end=NOW + timedelta(days=5), activate=True)
        self.assign(orgs=[self.other_org.id], end=NOW + timedelta(days=5), activate=True)
        self.assign(users=[self.alice.id])  # draft

        self.assertEqual([a.id for a in services.assignments_for_user(self.alice, now=NOW)], [mine.id])
        self.assertEqual(services.assignments_for_user(self.bob, now=NOW), [])


class ResponseCounterTests(AssignmentFixtureMixin, TestCase):
    def _response(self, assignment, local_id, status=ResponseStatus.COMPLETED):
        return SurveyResponse.objects.create(
            assignment=assignment, survey_version=assignment.survey_version, local_id=local_id, status=status,
        )

    def test_counts_follow_store(self):
        assignment = self.assign(orgs=[self.org.id], activate=True)
        self._response(assignment, "a")
        self._response(assignment, "b")
        self._response(assignment, "c", status=ResponseStatus.IN_PROGRESS)

        services.reconcile_response_counts(assignment)
        self.assertEqual(
            (assignment.responses_total, assignment.responses_completed, assignment.responses_in_progress), (3, 2, 1),
        )
        self.assertIsNotNone(assignment.counts_reconciled_at)

    def test_completed_never_decreases(self):
        assignment = self.assign(orgs=[self.org.id], activate=True)
        first = self._response(assignment, "a")
        self._response(assignment, "b")
        services.reconcile_response_counts(assignment)

        first.delete()
        with self.assertLogs("apps.assignments.services", level="WARNING"):
            services.reconcile_response_counts(assignment)
        assignment.refresh_from_db()
        self.assertEqual(assignment.responses_completed, 2)

    def test_reconcile_task(self):
        active = self.assign(orgs=[self.org.id], activate=True)
        draft = self.assign(users=[self.alice.id])
        self._response(active, "a")
        self._response(draft, "b")

        self.assertEqual(reconcile_assignment_counts_task(batch_size=1), 1)
        active.refresh_from_db()
        draft.refresh_from_db()
        self.assertEqual(active.responses_completed, 1)
        self.assertEqual(draft.responses_completed, 0)


class ReminderTests(AssignmentFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.deadline = NOW + timedelta(days=10)
        self.assignment = self.assign(
            orgs=[self.org.id],
            end=self.deadline,
            reminder_policy={"daysBeforeDeadline": [7, 3, 1]},
            activate=True,
        )

    def test_due_windows(self):
        a = self.assignment
        self.assertEqual(reminders.due_reminders(a, NOW, fired_offsets=[]), [])
        due = reminders.due_reminders(a, self.deadline - timedelta(days=7), fired_offsets=[])
        self.assertEqual([r.offset_days for r in due], [7])
        self.assertEqual(reminders.due_reminders(a, self.deadline - timedelta(days=6), fired_offsets=[]), [])
        due = reminders.due_reminders(a, self.deadline - timedelta(hours=2), fired_offsets=[])
        self.assertEqual([r.offset_days for r in due], [1])
        self.assertEqual(reminders.due_reminders(a, self.deadline - timedelta(hours=2), fired_offsets=[1]), [])
        self.assertEqual(reminders.due_reminders(a, self.deadline, fired_offsets=[]), [])

    def test_disabled_or_paused_sends_nothing(self):
        when = self.deadline - timedelta(days=7)
        services.transition(self.assignment, AssignmentStatus.PAUSED, now=NOW)
        self.assertEqual(reminders.due_reminders(self.assignment, when, fired_offsets=[]), [])

        services.transition(self.assignment, AssignmentStatus.ACTIVE, now=NOW)
        self.assignment.reminder_schedule = {**self.assignment.reminder_schedule, "enabled": False}
        self.assertEqual(reminders.due_reminders(self.assignment, when, fired_offsets=[]), [])

    def test_fires_once_per_offset(self):
        self.assertEqual(reminders.dispatch_due_reminders(NOW), 0)
        self.assertEqual(len(mail.outbox), 0)

        day_seven = self.deadline - timedelta(days=7, hours=-1)
        self.assertEqual(reminders.dispatch_due_reminders(day_seven), 1)
        self.assertEqual(sorted(m.to[0] for m in mail.outbox), ["alice@techforward.io", "bob@techforward.io"])
        self.assertIn("Engagement Pulse", mail.outbox[0].subject)
        self.assertIn(f"/surveys/{self.assignment.id}", mail.outbox[0].body)

        self.assertEqual(reminders.dispatch_due_reminders(day_seven + timedelta(hours=3)), 0)
        self.assertEqual(len(mail.outbox), 2)
        fire = ReminderFireRecord.objects.get(assignment=self.assignment)
        self.assertEqual((fire.offset_days, fire.recipient_count), (7, 2))

    def test_completed_respondents_are_skipped(self):
        SurveyResponse.objects.create(
            assignment=self.assignment, survey_version=self.assignment.survey_version,
            local_id="done", respondent=self.alice, status=ResponseStatus.COMPLETED,
        )
        self.assertEqual(reminders.pending_recipient_emails(self.assignment), ["bob@techforward.io"])

    def test_failed_record_is_sent_again(self):
        when = self.deadline - timedelta(days=3)
        with mock.patch.object(ReminderFireRecord.objects, "create", side_effect=DatabaseError("db down")):
            with self.assertLogs("apps.assignments.reminders", level="ERROR"):
                self.assertEqual(reminders.dispatch_due_reminders(when), 0)
        self.assertFalse(ReminderFireRecord.objects.exists())

        self.assertEqual(reminders.dispatch_due_reminders(when), 1)
        self.assertEqual(len(mail.outbox), 4)

    def test_failed_send_is_not_recorded(self):
        send = mock.Mock(side_effect=ConnectionError("smtp down"))
        when = self.deadline - timedelta(days=1)
        with self.assertLogs("apps.assignments.reminders", level="ERROR"):
            self.assertEqual(reminders.dispatch_due_reminders(when, send=send), 0)
        send.assert_called_once()
        self.assertFalse(ReminderFireRecord.objects.exists())


class AssignmentApiTests(AssignmentFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.admin = User.objects.create_user(username="admin", password="p")
        Role.objects.get_or_create(name="Viewer")[0].users.add(self.admin)
        Role.objects.get_or_create(name="Editor")[0].users.add(self.admin)
        self.client.force_authenticate(user=self.admin)

    def test_assign(self):
        payload = {
            "assignedTo": [self.carol.id],
            "assignedOrganizations": [self.org.id],
            "endDate": "2099-01-31T17:00:00Z",
            "reminderSchedule": {"enabled": True, "daysBeforeDeadline": [3, 1]},
            "accessControl": {"requireLogin": True},
            "activate": True,
        }
        resp = self.client.post(f"/api/admin/surveys/{self.survey.id}/assign/", payload, format="json")
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual(body["status"], "active")
        self.assertEqual(body["version"], 1)
        self.assertEqual(body["recipient_count"], 3)
        self.assertEqual(body["reminder_schedule"]["daysBeforeDeadline"], [3, 1])
        self.assertEqual(body["access_control"]["oneTimeAccess"], True)
        self.assertEqual(body["responses"], {"total": 0, "completed": 0, "in_progress": 0})

        listing = self.client.get(f"/api/admin/surveys/{self.survey.id}/assignments/").json()
        self.assertEqual(listing["count"], 1)

    def test_assign_unknown_references(self):
        payload = {"assignedOrganizations": [self.org.id, 424242]}
        resp = self.client.post(f"/api/admin/surveys/{self.survey.id}/assign/", payload, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["unresolved"], {"assignedOrganizations": [424242]})

        draft = Assignment.objects.get()
        self.assertEqual(resp.json()["assignment_id"], draft.id)
        self.assertEqual(draft.status, AssignmentStatus.DRAFT)
        detail = self.client.get(f"/api/admin/assignments/{draft.id}/").json()
        self.assertEqual(detail["unresolved_targets"], {"assignedOrganizations": [424242]})

    def test_assign_needs_a_target(self):
        resp = self.client.post(f"/api/admin/surveys/{self.survey.id}/assign/", {}, format="json")
        self.assertEqual(resp.status_code, 400)

    def test_assign_requires_editor(self):
        viewer = User.objects.create_user(username="viewer", password="p")
        Role.objects.get_or_create(name="Viewer")[0].users.add(viewer)
        self.client.force_authenticate(user=viewer)
        resp = self.client.post(f"/api/admin/surveys/{self.survey.id}/assign/", {"assignedTo": [self.alice.id]}, format="json")
        self.assertEqual(resp.status_code, 403)

    def test_status_change(self):
        assignment = self.assign(orgs=[self.org.id], activate=True, now=None)
        resp = self.client.post(f"/api/admin/assignments/{assignment.id}/status/", {"status": "paused"}, format="json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "paused")

        resp = self.client.post(f"/api/admin/assignments/{assignment.id}/status/", {"status": "draft"}, format="json")
        self.assertEqual(resp.status_code, 409)

    def test_client_survey_list(self):
        assignment = self.assign(depts=[self.eng.id], activate=True, now=None)
        self.client.force_authenticate(user=self.alice)
        data = self.client.get("/api/client/surveys/").json()["data"]
        self.assertEqual([d["assignment_id"] for d in data], [assignment.id])
        self.assertEqual(data[0]["definition"]["blocks"][0]["questions"][0]["id"], "team")

        self.client.force_authenticate(user=self.carol)
        self.assertEqual(self.client.get("/api/client/surveys/").json()["data"], [])
