"""
Story Delivery Module

Final stage of the autonomous story pipeline. Takes a story that has been
implemented and reviewed in its own git worktree and delivers it:

- Push the story branch to the remote
- Create a pull request (or reuse the one already open for the branch)
- Apply labels and request reviewers (best-effort)
- Wait for GitHub check runs, re-running failed checks a bounded number of times
- Squash-merge once CI passes, escalating conflicts and failures to humans
- Delete the remote branch, destroy the worktree
- Mark the story done in sprint-status.yaml
- Report dependent stories that are now ready to start

Error tiers:
  * FATAL: branch push failure or unhandled error. Failure record written,
    worktree preserved, exception re-raised.
  * ESCALATION: CI timeout, CI failure after retries, merge conflict, merge
    failure. PR left open, escalation logged, no exception.
  * BEST-EFFORT: labels, reviewers, branch protection lookup, remote branch
    deletion, worktree teardown. Logged only.
"""

__version__ = "0.5.0"
