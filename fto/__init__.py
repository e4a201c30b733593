"""Fleet Topology Orchestrator (FTO).

Controller for a fleet of container hosts that:
 - places role-differentiated service replicas under hard placement constraints
 - supervises replica health and drives batched, quorum-aware rollouts
 - routes external traffic to healthy backends through a TLS-terminating edge
 - obtains and renews domain certificates through the ACME HTTP-01 challenge

Stack descriptors are compose-v3 files; see examples/stack-elastic.yml.
"""
