from django.urls import path

from .views import MyVoteView, VoteSubmissionView

app_name = "voting"

urlpatterns = [
    path("<uuid:ballot_id>/vote/", VoteSubmissionView.as_view(), name="cast_vote"),
    path("<uuid:ballot_id>/my-vote/", MyVoteView.as_view(), name="my_vote"),
]
