"""
Enforcement package.

Holds the RBAC-with-domains model and the engine that answers
enforce(subject, resource, action, domain) from an in-memory index loaded
once from the policy store.

Modules of interest:
- models: Role, Resource and Action enums, rules and role assignments.
- engine: Matching algorithm and write-through mutations.
- lifecycle: Process-wide holder with exactly-once initialization.
- notifier: Optional Redis broadcast of policy changes.
"""
