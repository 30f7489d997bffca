from django.contrib import admin
from django.urls import path, include
from rest_framework_simplejwt.views import (
    TokenObtainPairView,
    TokenRefreshView,
    TokenVerifyView,
)
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView, SpectacularRedocView

from apps.surveys.views import ClientSurveyListView

urlpatterns = [
    path("admin/", admin.site.urls),

    # JWT endpoints
    path("api/token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("api/token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
    path("api/token/verify/", TokenVerifyView.as_view(), name="token_verify"),

    # admin (authoring + distribution)
    path("api/admin/surveys/", include("apps.surveys.urls")),
    path("api/admin/", include("apps.assignments.urls")),

    # recipient-facing
    path("api/client/surveys/", ClientSurveyListView.as_view(), name="client-survey-list"),
    path("api/surveys/", include("apps.responses.urls")),

    # reporting
    path("api/v1/analytics/", include("apps.analytics.urls")),

    # OpenAPI schema and docs
    path("api/schema/", SpectacularAPIView.as_view(), name="schema"),
    path("api/docs/", SpectacularSwaggerView.as_view(url_name="schema"), name="swagger-ui"),
    path("api/redoc/", SpectacularRedocView.as_view(url_name="schema"), name="redoc"),
]
