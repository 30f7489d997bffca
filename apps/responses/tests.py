from datetime import timedelta

from django.contrib.auth.models import User
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from apps.accounts.models import Department, Organization, OrganizationMember, Role
from apps.assignments import services as assignment_services
from apps.assignments.models import Assignment, AssignmentStatus
from apps.responses.models import ResponseStatus, SurveyAnswer, SurveyResponse
from apps.responses.services import decrypt_value, respondent_key_for
from apps.surveys.models import Survey, SurveyBlock, SurveyQuestion, QuestionType, default_survey_settings
from apps.surveys.services import publish


def published_survey(code="pulse", **settings):
    survey = Survey.objects.create(code=code, title="Engagement Pulse", settings={**default_survey_settings(), **settings})
    block = SurveyBlock.objects.create(survey=survey, title="Main", sort_order=1)
    SurveyQuestion.objects.create(
        block=block, code="team", title="Team", type=QuestionType.SINGLE_SELECT,
        sort_order=1, options=["Engineering", "Operations"], required=True,
    )
    SurveyQuestion.objects.create(block=block, code="nps", title="Recommend?", type=QuestionType.NPS, sort_order=2, required=True)
    SurveyQuestion.objects.create(
        block=block, code="salary", title="Salary band", type=QuestionType.OPEN_ENDED, sort_order=3, sensitive=True,
    )
    publish(survey)
    return survey


class SurveyResponsesApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.org = Organization.objects.create(name="TechForward Solutions")
        self.dept = Department.objects.create(organization=self.org, name="Engineering")
        self.user = User.objects.create_user(username="alice", email="alice@techforward.io", password="p")
        OrganizationMember.objects.create(organization=self.org, user=self.user, department=self.dept, job_role="Developer")
        self.survey = published_survey()
        self.assignment = self._assign(self.survey)
        self.url = f"/api/surveys/{self.assignment.id}/responses/"
        self.client.force_authenticate(user=self.user)

    def _assign(self, survey, access_control=None):
        return assignment_services.create_assignment(
            survey,
            assignment_services.AssignmentTargets(organizations=[self.org.id]),
            assignment_services.AssignmentWindow(end=timezone.now() + timedelta(days=7)),
            access_control=access_control,
            activate=True,
        )

    def _payload(self, local_id="L-1", **answers):
        return {
            "local_id": local_id,
            "survey_id": self.survey.id,
            "answers": answers or {"team": "Engineering", "nps": 9},
        }

    def test_submit_is_idempotent(self):
        with self.assertLogs("apps.responses.services", level="INFO") as logs:
            first = self.client.post(self.url, self._payload(), format="json")
        self.assertEqual(first.status_code, 201)
        stored = [r for r in logs.records if r.getMessage() == "Response stored"]
        self.assertEqual([r.is_new for r in stored], [True])
        self.assertEqual(first.json()["version"], 1)
        again = self.client.post(self.url, self._payload(), format="json")
        self.assertEqual(again.status_code, 200)
        self.assertEqual(again.json()["id"], first.json()["id"])

        self.assertEqual(SurveyResponse.objects.filter(assignment=self.assignment).count(), 1)
        self.assignment.refresh_from_db()
        self.assertEqual((self.assignment.responses_completed, self.assignment.responses_total), (1, 1))

    def test_reporting_attributes_without_identity(self):
        self.client.post(self.url, self._payload(), format="json")
        response = SurveyResponse.objects.get(local_id="L-1")
        self.assertIsNone(response.respondent)
        self.assertEqual(response.respondent_key, respondent_key_for(self.assignment.id, self.user.id))
        self.assertEqual((response.organization, response.department, response.job_role), (self.org, self.dept, "Developer"))
        self.assertIsNotNone(response.completed_at)

    def test_identified_survey_keeps_respondent(self):
        survey = published_survey(code="named", anonymityMode="identified")
        assignment = self._assign(survey)
        resp = self.client.post(
            f"/api/surveys/{assignment.id}/responses/",
            {"local_id": "L-9", "answers": {"team": "Operations", "nps": 3}},
            format="json",
        )
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(SurveyResponse.objects.get(local_id="L-9").respondent, self.user)

    def test_invalid_answers(self):
        resp = self.client.post(self.url, self._payload(team="Sales"), format="json")
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertEqual(body["reason"], "invalid")
        self.assertTrue(any("Sales" in e for e in body["errors"]))
        self.assertFalse(SurveyResponse.objects.exists())

    def test_wrong_survey(self):
        payload = self._payload()
        payload["survey_id"] = self.survey.id + 100
        resp = self.client.post(self.url, payload, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["reason"], "survey_mismatch")

    def test_window_closed(self):
        Assignment.objects.filter(pk=self.assignment.pk).update(end_date=timezone.now() - timedelta(minutes=1))
        resp = self.client.post(self.url, self._payload(), format="json")
        self.assertEqual(resp.status_code, 410)
        self.assertEqual(resp.json()["reason"], "window_closed")

    def test_paused_assignment_is_retryable(self):
        Assignment.objects.filter(pk=self.assignment.pk).update(status=AssignmentStatus.PAUSED)
        resp = self.client.post(self.url, self._payload(), format="json")
        self.assertEqual(resp.status_code, 503)
        self.assertEqual(resp.json()["reason"], "not_open")

    def test_login_required(self):
        self.client.force_authenticate(user=None)
        resp = self.client.post(self.url, self._payload(), format="json")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["reason"], "login_required")

    def test_anonymous_access(self):
        assignment = self._assign(self.survey, access_control={"requireLogin": False, "allowAnonymous": True})
        self.client.force_authenticate(user=None)
        resp = self.client.post(f"/api/surveys/{assignment.id}/responses/", self._payload(), format="json")
        self.assertEqual(resp.status_code, 201)
        response = SurveyResponse.objects.get(assignment=assignment)
        self.assertEqual(response.respondent_key, "")
        self.assertIsNone(response.organization)

    def test_not_assigned(self):
        outsider = User.objects.create_user(username="mallory", password="p")
        self.client.force_authenticate(user=outsider)
        resp = self.client.post(self.url, self._payload(), format="json")
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.json()["reason"], "not_assigned")

    def test_one_time_access(self):
        self.assertEqual(self.client.post(self.url, self._payload("L-1"), format="json").status_code, 201)
        resp = self.client.post(self.url, self._payload("L-2"), format="json")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.json()["reason"], "already_submitted")

    def test_consent_required(self):
        survey = published_survey(code="consent", consentRequired=True)
        assignment = self._assign(survey)
        url = f"/api/surveys/{assignment.id}/responses/"
        payload = {"local_id": "C-1", "answers": {"team": "Engineering", "nps": 8}}
        resp = self.client.post(url, payload, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["reason"], "consent_required")
        payload["metadata"] = {"consent": True}
        self.assertEqual(self.client.post(url, payload, format="json").status_code, 201)

    def test_sensitive_answers_are_encrypted(self):
        self.client.post(self.url, self._payload(team="Engineering", nps=7, salary="90-110k"), format="json")
        answer = SurveyAnswer.objects.get(question_code="salary")
        self.assertIsNone(answer.value)
        self.assertNotIn(b"90-110k", bytes(answer.encrypted_value))
        self.assertEqual(decrypt_value(answer.encrypted_value), "90-110k")
        self.assertEqual(SurveyAnswer.objects.get(question_code="team").value, "Engineering")

        own = self.client.get(f"{self.url}L-1/")
        self.assertEqual(own.status_code, 200)
        self.assertEqual(own.json()["answers"], {"team": "Engineering", "nps": 7, "salary": "90-110k"})

    def test_save_and_continue(self):
        resp = self.client.post(
            self.url, {"local_id": "L-1", "answers": {"team": "Operations"}, "status": "in_progress"}, format="json",
        )
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["status"], "in_progress")
        self.assertIsNone(resp.json()["completed_at"])
        self.assignment.refresh_from_db()
        self.assertEqual(self.assignment.responses_in_progress, 1)

        resp = self.client.post(self.url, {"local_id": "L-1", "answers": {"nps": 10}}, format="json")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], ResponseStatus.COMPLETED)

        response = SurveyResponse.objects.get(local_id="L-1")
        self.assertEqual(
            dict(response.answers.values_list("question_code", "value")), {"team": "Operations", "nps": 10},
        )
        self.assignment.refresh_from_db()
        self.assertEqual(
            (self.assignment.responses_completed, self.assignment.responses_in_progress, self.assignment.responses_total),
            (1, 0, 1),
        )

    def test_incomplete_final_submission_rejected(self):
        resp = self.client.post(self.url, self._payload(team="Engineering"), format="json")
        self.assertEqual(resp.status_code, 400)

    def test_blank_local_id_rejected(self):
        resp = self.client.post(self.url, {"local_id": "  ", "answers": {}}, format="json")
        self.assertEqual(resp.status_code, 400)

    def test_admin_listing_requires_viewer(self):
        self.client.post(self.url, self._payload(), format="json")
        self.assertEqual(self.client.get(self.url).status_code, 403)

        Role.objects.get_or_create(name="Viewer")[0].users.add(self.user)
        body = self.client.get(self.url).json()
        self.assertEqual(body["count"], 1)
        self.assertEqual(body["results"][0]["organization"], "TechForward Solutions")
        self.assertNotIn("answers", body["results"][0])
