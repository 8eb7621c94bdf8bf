"""
Policy Service package.

This package decides whether a user or machine credential may perform an
action on a resource within a domain (global, an organization or a
project). It provides:

- app.main: API surface for checks, provisioning and auth tokens.
- app.enforcement: Domain model, in-memory engine and its lifecycle holder.
- app.persistence: Policy store and the read-only tenant directory.
- app.provisioning: Grant templates and provisioning workflows.
- app.context: Per-request user/organization/project resolution and guards.
- app.tokens: Auth tokens bound to policy types.

Guidelines:
- Decisions never perform I/O once the rule set is loaded.
- "No" is a boolean answer; only infrastructure failures raise.
- Domains do not nest; provisioning copies roles into child domains.
"""
