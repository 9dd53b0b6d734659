"""
Job runner components.

- scheduler.py: cron trigger (APScheduler) that enqueues job runs
- queue.py: durable FIFO queue with admission control
- capacity.py: elastic vCPU capacity leases
- executor.py: single-attempt execution with retry resubmission
- watcher.py / alerts.py: failure detection and alert fan-out
- worker.py: worker threads and the terminal-event pump
"""
