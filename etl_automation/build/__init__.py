"""
Continuous delivery of the job image.

- pipeline.py: push-triggered checkout / build / publish state machine
- registry.py: tagged image storage (local filesystem or docker registry)
"""
