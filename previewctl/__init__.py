"""
previewctl - Lifecycle automation for FluxCD preview environments.

This package creates per-change preview deployments (an OCIRepository plus a
Kustomization), waits for the reconciler to report them ready, tears them down
by label and keeps a single status comment on the pull request up to date.
"""

__version__ = "0.1.0"
__author__ = "previewctl maintainers"
