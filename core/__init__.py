"""core/ -- Kernel: settings, error taxonomy, rate limiting, outbound notifications.

Layer rule: core/ has no reverse dependencies. It never imports from auth/ or api/.
"""
