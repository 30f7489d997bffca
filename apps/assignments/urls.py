from django.urls import path
from .views import SurveyAssignView, SurveyAssignmentListView, AssignmentDetailView, AssignmentStatusView

urlpatterns = [
    path("surveys/<int:survey_id>/assign/", SurveyAssignView.as_view(), name="survey-assign"),
    path("surveys/<int:survey_id>/assignments/", SurveyAssignmentListView.as_view(), name="survey-assignments"),
    path("assignments/<int:assignment_id>/", AssignmentDetailView.as_view(), name="assignment-detail"),
    path("assignments/<int:assignment_id>/status/", AssignmentStatusView.as_view(), name="assignment-status"),
]
