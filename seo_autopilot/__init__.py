"""
SEO Autopilot Job-Processing Core

Resilient article generation for WordPress sites: a checkpointed 7-phase
generation pipeline guarded by caches, circuit breakers, retries and
timeouts, driven by a batch runner or an autonomous scheduler.

Usage:
    from seo_autopilot.scheduler import AutonomousScheduler, SchedulerContext

    scheduler = AutonomousScheduler()
    await scheduler.start(SchedulerContext(pipeline=pipeline, items=items))
"""

__version__ = "1.0.0"
