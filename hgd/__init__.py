"""Health-Gated Deployer (HGD).

Deploys one release at a time per environment:
 - pre-deploy checks and artifact resolution
 - snapshot of the running environment before anything changes
 - direct (stop-then-start) or blue-green (side-by-side, then cut over) rollout
 - bounded health polling of the new instances
 - automatic restore of the snapshot when anything after the first change fails

The orchestrator is independent of how containers are run; Docker-backed
collaborators live in docker_ops.
"""
