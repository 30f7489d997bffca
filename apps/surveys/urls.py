from django.urls import path
from .views import (
    SurveyListCreateView, SurveyDetailView, BlockCreateView,
    QuestionCreateView, QuestionDetailView, SurveyValidateView,
    SurveyPublishView, SurveyArchiveView, SurveyVersionListView, SurveyVersionDetailView,
)

urlpatterns = [
    path("", SurveyListCreateView.as_view(), name="survey-list-create"),
    path("<int:survey_id>/", SurveyDetailView.as_view(), name="survey-detail"),
    path("<int:survey_id>/blocks/", BlockCreateView.as_view(), name="block-create"),
    path("blocks/<int:block_id>/questions/", QuestionCreateView.as_view(), name="question-create"),
    path("questions/<int:question_id>/", QuestionDetailView.as_view(), name="question-detail"),
    path("<int:survey_id>/validate/", SurveyValidateView.as_view(), name="survey-validate"),
    path("<int:survey_id>/publish/", SurveyPublishView.as_view(), name="survey-publish"),
    path("<int:survey_id>/archive/", SurveyArchiveView.as_view(), name="survey-archive"),
    path("<int:survey_id>/versions/", SurveyVersionListView.as_view(), name="survey-versions"),
    path("<int:survey_id>/versions/<int:version>/", SurveyVersionDetailView.as_view(), name="survey-version-detail"),
]
