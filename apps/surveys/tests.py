from django.contrib.auth.models import User
from django.core.exceptions import ValidationError
from django.test import TestCase
from rest_framework.test import APIClient

from apps.accounts.models import Organization, Role
from apps.core.exceptions import SurveyEngineError, SurveyValidationError
from apps.surveys import services
from apps.surveys.models import (
    Survey, SurveyBlock, SurveyQuestion, SurveyStatus, SurveyVersion,
    QuestionType, default_survey_settings,
)
from apps.surveys.questions import is_visible, validate_answers


def make_survey(code="pulse", threshold=5, **extra):
    survey = Survey.objects.create(
        code=code,
        title="Engagement Pulse",
        settings={**default_survey_settings(), "anonymityThreshold": threshold},
        **extra,
    )
    block = SurveyBlock.objects.create(survey=survey, title="About you", sort_order=1)
    SurveyQuestion.objects.create(
        block=block, code="team", title="Which team are you on?", type=QuestionType.SINGLE_SELECT,
        sort_order=1, options=["Engineering", "Operations"], required=True,
    )
    SurveyQuestion.objects.create(
        block=block, code="nps", title="How likely are you to recommend us?", type=QuestionType.NPS,
        sort_order=2, required=True,
    )
    return survey, block


class SurveyPublishTests(TestCase):
    def test_publish_freezes_version(self):
        survey, _ = make_survey()
        version = services.publish(survey)

        self.assertEqual(version.version, 1)
        self.assertEqual(survey.version, 1)
        self.assertEqual(survey.status, SurveyStatus.PUBLISHED)
        ids = [q["id"] for b in version.definition["blocks"] for q in b["questions"]]
        self.assertEqual(ids, ["team", "nps"])
        self.assertEqual(version.definition["settings"]["anonymityThreshold"], 5)

    def test_republish_keeps_earlier_snapshot(self):
        survey, block = make_survey()
        services.publish(survey)
        SurveyQuestion.objects.filter(block=block, code="team").update(title="Which department?")
        services.publish(survey)

        v1, v2 = SurveyVersion.objects.filter(survey=survey).order_by("version")
        self.assertEqual(v2.version, 2)
        self.assertEqual(v1.definition["blocks"][0]["questions"][0]["title"], "Which team are you on?")
        self.assertEqual(v2.definition["blocks"][0]["questions"][0]["title"], "Which department?")

    def test_snapshot_cannot_be_updated(self):
        survey, _ = make_survey()
        version = services.publish(survey)
        version.definition = {}
        with self.assertRaises(ValidationError):
            version.save()

    def test_choice_without_options_blocks_publish(self):
        survey, block = make_survey()
        SurveyQuestion.objects.create(
            block=block, code="shift", title="Shift", type=QuestionType.MULTI_SELECT, sort_order=3, options=[],
        )
        with self.assertRaises(SurveyValidationError) as ctx:
            services.publish(survey)
        self.assertIn("empty_collection", ctx.exception.result.codes())
        survey.refresh_from_db()
        self.assertEqual(survey.version, 0)
        self.assertEqual(survey.status, SurveyStatus.DRAFT)
        self.assertFalse(survey.versions.exists())

    def test_matrix_needs_rows_and_columns(self):
        survey, block = make_survey()
        SurveyQuestion.objects.create(
            block=block, code="grid", title="Rate", type=QuestionType.MATRIX_LIKERT, sort_order=3,
            matrix_rows=[], matrix_columns=["Agree", "Disagree"],
        )
        result = services.validate(survey)
        self.assertFalse(result.is_valid)
        self.assertEqual([i.path for i in result.errors], ["blocks[0].questions[2].matrix_rows"])

    def test_slider_needs_ordered_scale(self):
        survey, block = make_survey()
        SurveyQuestion.objects.create(
            block=block, code="effort", title="Effort", type=QuestionType.SLIDER, sort_order=3,
            scale={"min": 10, "max": 0},
        )
        self.assertIn("scale_inverted", services.validate(survey).codes())

    def test_logic_must_reference_earlier_question(self):
        survey, block = make_survey()
        SurveyQuestion.objects.filter(block=block, code="team").update(
            conditional_logic={"showIf": [{"questionId": "nps", "operator": "equals", "value": 10}]},
        )
        self.assertIn("logic_reference", services.validate(survey).codes())

    def test_threshold_rules(self):
        low, _ = make_survey(code="low", threshold=1)
        self.assertIn("threshold_too_low", [i.code for i in services.validate(low).errors])

        small, _ = make_survey(code="small", threshold=3)
        result = services.validate(small)
        self.assertTrue(result.is_valid)
        self.assertEqual([i.code for i in result.warnings], ["threshold_below_recommended"])
        self.assertEqual(services.publish(small).version, 1)

    def test_empty_survey_blocks_publish(self):
        survey = Survey.objects.create(code="empty", title="Empty")
        self.assertEqual(services.validate(survey).codes(), ["no_questions"])

    def test_archived_survey_cannot_publish(self):
        survey, _ = make_survey()
        services.archive(survey)
        with self.assertRaises(SurveyEngineError):
            services.publish(survey)


class AnswerValidationTests(TestCase):
    definition = {
        "blocks": [{
            "questions": [
                {"id": "team", "title": "Team", "type": "single-select", "required": True,
                 "options": ["Engineering", "Operations"]},
                {"id": "nps", "title": "NPS", "type": "nps", "required": True, "scale": None},
                {"id": "why", "title": "Why?", "type": "open-ended", "required": False,
                 "validation": {"maxLength": 20},
                 "conditional_logic": {"showIf": [{"questionId": "nps", "operator": "less-than", "value": 7}]}},
            ],
        }],
    }

    def test_valid_answers(self):
        self.assertEqual(validate_answers(self.definition, {"team": "Engineering", "nps": 9}), [])

    def test_hidden_question_must_not_be_answered(self):
        errors = validate_answers(self.definition, {"team": "Engineering", "nps": 9, "why": "meh"})
        self.assertEqual(errors, ["why: question is not shown for these answers"])

    def test_visible_follow_up_is_checked(self):
        self.assertTrue(is_visible(self.definition["blocks"][0]["questions"][2], {"nps": 4}))
        errors = validate_answers(self.definition, {"team": "Engineering", "nps": 4, "why": "x" * 21})
        self.assertEqual(errors, ["why: must be at most 20 characters"])

    def test_bad_option_and_out_of_range_score(self):
        errors = validate_answers(self.definition, {"team": "Sales", "nps": 11})
        self.assertEqual(len(errors), 2)

    def test_unknown_question_id(self):
        errors = validate_answers(self.definition, {"team": "Engineering", "nps": 9, "bogus": 1})
        self.assertEqual(errors, ["Unknown question id(s): ['bogus']"])

    def test_partial_skips_required(self):
        self.assertEqual(validate_answers(self.definition, {"nps": 5}, partial=True), [])
        self.assertEqual(len(validate_answers(self.definition, {"nps": 5})), 1)


class SurveysApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(username="editor", password="pass")
        Role.objects.get_or_create(name="Viewer")[0].users.add(self.user)
        Role.objects.get_or_create(name="Editor")[0].users.add(self.user)
        self.client.force_authenticate(user=self.user)
        self.org = Organization.objects.create(name="TechForward Solutions")

    def _build_via_api(self):
        resp = self.client.post(
            "/api/admin/surveys/",
            {"title": "Quarterly Pulse", "organization_id": self.org.id, "settings": {"anonymityThreshold": 5}},
            format="json",
        )
        self.assertEqual(resp.status_code, 201)
        survey_id = resp.json()["id"]
        self.assertEqual(resp.json()["code"], "quarterly-pulse")
        self.assertEqual(resp.json()["settings"]["anonymityMode"], "anonymous")

        resp = self.client.post(f"/api/admin/surveys/{survey_id}/blocks/", {"title": "Main", "sort_order": 1}, format="json")
        self.assertEqual(resp.status_code, 201)
        block_id = resp.json()["id"]
        return survey_id, block_id

    def test_author_and_publish(self):
        survey_id, block_id = self._build_via_api()
        resp = self.client.post(
            f"/api/admin/surveys/blocks/{block_id}/questions/",
            {"code": "team", "title": "Team", "type": "single-select", "sort_order": 1, "options": ["A", "B"]},
            format="json",
        )
        self.assertEqual(resp.status_code, 201)

        resp = self.client.get(f"/api/admin/surveys/{survey_id}/validate/")
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["valid"])

        resp = self.client.post(f"/api/admin/surveys/{survey_id}/publish/")
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["version"], 1)

        resp = self.client.get(f"/api/admin/surveys/{survey_id}/versions/")
        self.assertEqual([v["version"] for v in resp.json()["results"]], [1])

        resp = self.client.get(f"/api/admin/surveys/{survey_id}/versions/1/")
        self.assertEqual(resp.json()["definition"]["blocks"][0]["questions"][0]["options"], ["A", "B"])

    def test_publish_reports_issues(self):
        survey_id, block_id = self._build_via_api()
        self.client.post(
            f"/api/admin/surveys/blocks/{block_id}/questions/",
            {"code": "team", "title": "Team", "type": "single-select", "sort_order": 1},
            format="json",
        )
        resp = self.client.post(f"/api/admin/surveys/{survey_id}/publish/")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["issues"][0]["code"], "empty_collection")

    def test_duplicate_question_code_rejected(self):
        _, block_id = self._build_via_api()
        payload = {"code": "team", "title": "Team", "type": "open-ended", "sort_order": 1}
        self.assertEqual(self.client.post(f"/api/admin/surveys/blocks/{block_id}/questions/", payload, format="json").status_code, 201)
        payload["sort_order"] = 2
        resp = self.client.post(f"/api/admin/surveys/blocks/{block_id}/questions/", payload, format="json")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["field"], "code")

    def test_published_survey_cannot_be_deleted(self):
        survey, _ = make_survey()
        services.publish(survey)
        resp = self.client.delete(f"/api/admin/surveys/{survey.id}/")
        self.assertEqual(resp.status_code, 409)

    def test_publish_requires_editor(self):
        survey, _ = make_survey()
        viewer = User.objects.create_user(username="viewer", password="p")
        Role.objects.get_or_create(name="Viewer")[0].users.add(viewer)
        self.client.force_authenticate(user=viewer)
        self.assertEqual(self.client.get("/api/admin/surveys/").status_code, 200)
        self.assertEqual(self.client.post(f"/api/admin/surveys/{survey.id}/publish/").status_code, 403)
