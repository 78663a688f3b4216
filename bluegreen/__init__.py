"""Blue-green release orchestrator.

Puts a new build on the idle slot of a production route, verifies it, then
switches the route in one atomic write:
 - determine the live slot from the control plane (never from local memory)
 - deploy and health-check the candidate on the other slot
 - cut over, then remove the previous slot only once the switch is confirmed
 - on any failure before the switch, tear the candidate down and leave the route alone

Backends: Docker (single node) and Kubernetes.
"""
