"""Provider execution and change-control sandbox.

A run goes through four collaborators owned by ``ProviderOrchestrator``:

- ``snapshot.capture`` lists uncommitted paths before and after the run.
- ``ProcessSessionRegistry`` spawns the agent CLI and streams its output,
  passing every chunk through ``sanitization.StreamSanitizer``.
- ``ChangeControlEnforcer`` diffs the two snapshots, checks the changed paths
  against the task whitelist and reverts the rest through ``GitClient``.
- ``ArtifactStore`` keeps the transcript and the run result; that tree is
  never subject to change control.

Protection is post-hoc only: the agent process itself is not isolated, it is
the working tree that gets reconciled once the process exits.
"""
