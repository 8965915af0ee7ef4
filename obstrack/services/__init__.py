"""obstrack services.

Each service is a self-contained component wired together per client by
the web workspace:
- session_service: authentication state machine over an identity gateway
- role_service: write-once role resolution
- observation_service: per-bucket observation records, approvals, reports
- screen_service: pure screen routing
- web_service: client workspace and HTTP surface
"""
