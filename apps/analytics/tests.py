from django.contrib.auth.models import User
from django.test import SimpleTestCase, TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from apps.accounts.models import Department, Organization, Role
from apps.analytics.aggregation import AggregateSlice, ResponseRecord, aggregate, guard_slices, tally
from apps.assignments import services as assignment_services
from apps.core.exceptions import AnonymityViolation
from apps.responses.models import ResponseStatus, SurveyAnswer, SurveyResponse
from apps.surveys.models import Survey, SurveyBlock, SurveyQuestion, QuestionType
from apps.surveys.services import publish

PCU = "Pacific Coast University"
TFS = "TechForward Solutions"
NPS_DEFINITION = {"blocks": [{"questions": [{"id": "nps", "type": "nps"}]}]}
TFS_SCORES = [10, 10, 9, 9, 8, 7, 3, 5]


def org_records():
    records = [ResponseRecord(f"pcu-{i}", {"organization": PCU}, {"nps": 9}) for i in range(3)]
    records += [ResponseRecord(f"tfs-{i}", {"organization": TFS}, {"nps": s}) for i, s in enumerate(TFS_SCORES)]
    return records


class AggregateTests(SimpleTestCase):
    def test_small_group_is_suppressed(self):
        overall, pcu, tfs = aggregate(org_records(), ["organization"], 5, definition=NPS_DEFINITION)

        self.assertEqual((overall.key, overall.respondent_count, overall.suppressed), ((), 11, False))
        self.assertEqual(pcu.key, (PCU,))
        self.assertTrue(pcu.suppressed)
        self.assertIsNone(pcu.respondent_count)
        self.assertEqual(pcu.respondent_count_display, "< 5")
        self.assertEqual(pcu.tallies, {})

        self.assertEqual((tfs.key, tfs.respondent_count, tfs.respondent_count_display), ((TFS,), 8, "8"))
        nps = tfs.tallies["nps"]
        self.assertEqual((nps["promoters"], nps["passives"], nps["detractors"]), (4, 2, 2))
        self.assertEqual(nps["nps"], 25.0)

    def test_output_is_deterministic(self):
        forward = [s.as_dict() for s in aggregate(org_records(), ["organization"], 5, definition=NPS_DEFINITION)]
        backward = [s.as_dict() for s in aggregate(list(reversed(org_records())), ["organization"], 5, definition=NPS_DEFINITION)]
        self.assertEqual(forward, backward)

    def test_small_population_suppresses_everything(self):
        records = [ResponseRecord(f"r{i}", {"organization": TFS}, {"nps": 9}) for i in range(4)]
        slices = aggregate(records, ["organization"], 5, definition=NPS_DEFINITION)
        self.assertEqual(len(slices), 2)
        self.assertTrue(all(s.suppressed for s in slices))

    def test_empty_input_yields_suppressed_overall(self):
        slices = aggregate([], ["organization"], 5)
        self.assertEqual([(s.key, s.suppressed) for s in slices], [((), True)])

    def test_respondents_counted_once(self):
        records = [ResponseRecord("same", {}, {"nps": 9}) for _ in range(6)]
        (overall,) = aggregate(records, [], 2)
        self.assertTrue(overall.suppressed)

    def test_nested_dimensions_and_missing_values(self):
        records = [ResponseRecord(f"a{i}", {"organization": TFS, "department": "Eng"}, {}) for i in range(5)]
        records += [ResponseRecord(f"b{i}", {"organization": TFS}, {}) for i in range(5)]
        slices = aggregate(records, ["organization", "department"], 5)
        self.assertEqual(
            [(s.dimensions, s.key, s.respondent_count) for s in slices],
            [
                ((), (), 10),
                (("organization",), (TFS,), 10),
                (("organization", "department"), (TFS, "Eng"), 5),
                (("organization", "department"), (TFS, None), 5),
            ],
        )
        self.assertEqual(slices[-1].as_dict()["key"], [TFS, "(unknown)"])

    def test_tallies_follow_answer_shape_without_definition(self):
        records = [
            ResponseRecord(f"r{i}", {"organization": TFS}, {"grid": {"Pay": "Agree"}, "pick": ["A", "B"]})
            for i in range(6)
        ]
        overall, tfs = aggregate(records, ["organization"], 5)
        self.assertEqual(tfs.respondent_count, 6)
        self.assertEqual(overall.tallies["grid"]["type"], "matrix-likert")
        self.assertEqual(overall.tallies["grid"]["rows"], {"Pay": {"Agree": 6}})
        self.assertEqual(overall.tallies["pick"]["counts"], {"A": 6, "B": 6})

    def test_filters(self):
        slices = aggregate(org_records(), [], 5, definition=NPS_DEFINITION, filters={"organization": TFS})
        self.assertEqual(slices[0].respondent_count, 8)

    def test_invalid_threshold(self):
        for bad in (0, -1, True, "5"):
            with self.assertRaises(ValueError):
                aggregate(org_records(), [], bad)

    def test_guard_rejects_leaks(self):
        with self.assertRaises(AnonymityViolation):
            guard_slices([AggregateSlice(("organization",), (PCU,), 3, "3", False, {})], 5)
        with self.assertRaises(AnonymityViolation):
            guard_slices([AggregateSlice(("organization",), (PCU,), None, "< 5", True, {"nps": {}})], 5)
        guard_slices([AggregateSlice((), (), 5, "5", False, {})], 5)


class TallyTests(SimpleTestCase):
    def test_per_type_tallies(self):
        questions = [
            {"id": "pick", "type": "single-select", "options": ["A", "B"]},
            {"id": "grid", "type": "matrix-likert", "matrix_rows": ["Pay"], "matrix_columns": ["Agree", "Disagree"]},
            {"id": "rank", "type": "ranking", "ranking_items": ["Pay", "Growth", "Culture"]},
            {"id": "effort", "type": "slider"},
            {"id": "notes", "type": "open-ended"},
        ]
        answers = [
            {"pick": "B", "grid": {"Pay": "Agree"}, "rank": ["Growth", "Pay", "Culture"], "effort": 2, "notes": "ok"},
            {"pick": "B", "grid": {"Pay": "Agree"}, "rank": ["Pay", "Growth", "Culture"], "effort": 4},
            {"pick": "C", "effort": 9, "notes": "fine"},
        ]
        out = tally([ResponseRecord(str(i), {}, a) for i, a in enumerate(answers)], questions)

        self.assertEqual(out["pick"]["counts"], {"A": 0, "B": 2, "C": 1})
        self.assertEqual(out["grid"]["rows"], {"Pay": {"Agree": 2, "Disagree": 0}})
        self.assertEqual(out["rank"]["mean_position"], {"Pay": 1.5, "Growth": 1.5, "Culture": 3.0})
        self.assertEqual(out["rank"]["first_place"], {"Pay": 1, "Growth": 1, "Culture": 0})
        self.assertEqual(out["effort"]["mean"], 5.0)
        self.assertEqual(out["effort"]["distribution"], {"2": 1, "4": 1, "9": 1})
        self.assertEqual(out["notes"], {"type": "open-ended", "answered": 2})


class AnalyticsApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(username="viewer", password="pass1234")
        Role.objects.get_or_create(name="Viewer")[0].users.add(self.user)
        self.client.force_authenticate(user=self.user)

        self.pcu = Organization.objects.create(name=PCU)
        self.tfs = Organization.objects.create(name=TFS)
        self.survey = Survey.objects.create(code="pulse", title="Engagement Pulse")
        block = SurveyBlock.objects.create(survey=self.survey, title="Main", sort_order=1)
        SurveyQuestion.objects.create(block=block, code="nps", title="Recommend?", type=QuestionType.NPS, sort_order=1)
        SurveyQuestion.objects.create(
            block=block, code="tenure", title="Tenure", type=QuestionType.DEMOGRAPHICS, sort_order=2,
            options=["<1y", "1-3y", "3y+"],
        )
        publish(self.survey)
        self.assignment = assignment_services.create_assignment(
            self.survey,
            assignment_services.AssignmentTargets(organizations=[self.pcu.id, self.tfs.id]),
            assignment_services.AssignmentWindow(),
        )
        for i in range(3):
            self._response(f"p{i}", self.pcu, 9)
        for i, score in enumerate(TFS_SCORES):
            self._response(f"t{i}", self.tfs, score)

    def _response(self, local_id, org, score):
        response = SurveyResponse.objects.create(
            assignment=self.assignment, survey_version=self.assignment.survey_version, local_id=local_id,
            organization=org, status=ResponseStatus.COMPLETED, completed_at=timezone.now(),
            demographics={"tenure": "1-3y"},
        )
        SurveyAnswer.objects.create(response=response, question_code="nps", value=score)

    def test_report_suppresses_small_organization(self):
        resp = self.client.get(f"/api/v1/analytics/surveys/{self.survey.id}/report/?slice_by=organization")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual((body["version"], body["threshold"]), (1, 5))
        overall, pcu, tfs = body["slices"]
        self.assertEqual(overall["respondent_count"], 11)
        self.assertEqual((pcu["key"], pcu["suppressed"], pcu["respondent_count_display"]), ([PCU], True, "< 5"))
        self.assertEqual((tfs["key"], tfs["respondent_count"]), ([TFS], 8))
        self.assertEqual(tfs["tallies"]["nps"]["nps"], 25.0)

    def test_report_by_demographic(self):
        resp = self.client.get(f"/api/v1/analytics/surveys/{self.survey.id}/report/?slice_by=tenure")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["slices"][1]["key"], ["1-3y"])

    def test_same_department_name_in_two_organizations(self):
        pcu_eng = Department.objects.create(organization=self.pcu, name="Engineering")
        tfs_eng = Department.objects.create(organization=self.tfs, name="Engineering")
        SurveyResponse.objects.filter(organization=self.pcu).update(department=pcu_eng)
        SurveyResponse.objects.filter(organization=self.tfs).update(department=tfs_eng)

        resp = self.client.get(f"/api/v1/analytics/surveys/{self.survey.id}/report/?slice_by=department")
        _, pcu, tfs = resp.json()["slices"]
        self.assertEqual((pcu["key"], pcu["suppressed"]), ([f"{PCU} / Engineering"], True))
        self.assertEqual((tfs["key"], tfs["respondent_count"]), ([f"{TFS} / Engineering"], 8))

    def test_report_scoped_to_organization(self):
        resp = self.client.get(f"/api/v1/analytics/surveys/{self.survey.id}/report/?organization_id={self.pcu.id}")
        self.assertTrue(resp.json()["slices"][0]["suppressed"])

    def test_report_rejects_unknown_inputs(self):
        base = f"/api/v1/analytics/surveys/{self.survey.id}/report/"
        self.assertEqual(self.client.get(f"{base}?slice_by=salary").status_code, 400)
        self.assertEqual(self.client.get(f"{base}?version=9").status_code, 404)

    def test_report_requires_viewer(self):
        self.client.force_authenticate(user=User.objects.create_user(username="nobody", password="p"))
        resp = self.client.get(f"/api/v1/analytics/surveys/{self.survey.id}/report/")
        self.assertEqual(resp.status_code, 403)

    def test_overall_submissions_ok(self):
        resp = self.client.get("/api/v1/analytics/overall-submissions/?window=day&days=7")
        self.assertEqual(resp.status_code, 200)
        data = resp.json()
        self.assertEqual(len(data["labels"]), len(data["data"]))
        self.assertEqual(sum(data["data"]), 11)

    def test_responses_by_survey_status(self):
        resp = self.client.get("/api/v1/analytics/responses-by-survey-status/")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["labels"], ["draft", "published", "archived"])
        self.assertEqual(body["data"], [0, 11, 0])

    def test_assignment_status_counts(self):
        resp = self.client.get(f"/api/v1/analytics/assignment-status/?survey_id={self.survey.id}")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(dict(zip(body["labels"], body["data"]))["draft"], 1)
