"""MCA CRM backend: CRM schema, CRUD API and the OrgMeter import/sync pipelines."""
