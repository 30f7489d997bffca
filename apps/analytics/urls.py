from django.urls import path
from .views import SurveyReportView, OverallSubmissionsView, ResponsesBySurveyStatusView, AssignmentStatusCountsView


urlpatterns = [
    path("surveys/<int:survey_id>/report/", SurveyReportView.as_view(), name="survey-report"),
    path("overall-submissions/", OverallSubmissionsView.as_view(), name="overall-submissions"),
    path("responses-by-survey-status/", ResponsesBySurveyStatusView.as_view(), name="responses-by-survey-status"),
    path("assignment-status/", AssignmentStatusCountsView.as_view(), name="assignment-status"),
]
