"""OrgMeter import, job orchestration and sync pipelines."""
