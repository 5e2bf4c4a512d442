"""Engine framework: everything that touches processes, files, secrets or time.

Components are wired together by `stagerun.app.run.build_runner`; the
definition model and status rules they share live in `stagekit`.
"""
