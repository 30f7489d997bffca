from django.urls import path
from .views import AssignmentResponsesView, OwnResponseView

urlpatterns = [
    path("<int:assignment_id>/responses/", AssignmentResponsesView.as_view(), name="assignment-responses"),
    path("<int:assignment_id>/responses/<str:local_id>/", OwnResponseView.as_view(), name="own-response"),
]
