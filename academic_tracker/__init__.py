"""Backend package for the Smart Academic Tracker.

Students enroll in subjects and follow their grades, teachers apply for
subjects and record grades, admins manage academic periods, subjects,
applications and rosters. `container.Container` wires the repositories
and services; `main.app` exposes them over HTTP.
"""
