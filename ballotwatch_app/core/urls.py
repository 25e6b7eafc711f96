from django.urls import path

from core import views_elections, views_health

urlpatterns = [
    path("healthz", views_health.healthz, name="healthz"),
    path("readyz", views_health.readyz, name="readyz"),

    path("api/results/visibility", views_elections.results_visibility, name="results-visibility"),
    path("api/contests/<int:contest_id>/tally", views_elections.contest_tally, name="contest-tally"),
    path("api/contests/<int:contest_id>/engagement", views_elections.contest_engagement, name="contest-engagement"),
    path("api/contests/<int:contest_id>/vote", views_elections.contest_vote_submit, name="contest-vote-submit"),

    path("api/contests/<int:contest_id>/start", views_elections.contest_start, name="contest-start"),
    path("api/contests/<int:contest_id>/pause", views_elections.contest_pause, name="contest-pause"),
    path("api/contests/<int:contest_id>/resume", views_elections.contest_resume, name="contest-resume"),
    path("api/contests/<int:contest_id>/cancel", views_elections.contest_cancel, name="contest-cancel"),
    path("api/contests/<int:contest_id>/conclude", views_elections.contest_conclude, name="contest-conclude"),
    path("api/contests/<int:contest_id>/extend", views_elections.contest_extend_end, name="contest-extend-end"),
    path("api/contests/<int:contest_id>/reopen", views_elections.contest_reopen, name="contest-reopen"),
    path(
        "api/contests/<int:contest_id>/publish-results",
        views_elections.contest_publish_results,
        name="contest-publish-results",
    ),
    path("api/contests/<int:contest_id>/delete", views_elections.contest_delete, name="contest-delete"),
]
