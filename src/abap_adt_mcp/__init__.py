"""
ABAP ADT MCP - ABAP development objects exposed as tools.

Translates tool calls into requests against the SAP ABAP Development Tools
(ADT) REST API, keeping the stateful session (cookies, CSRF token, session
type, connection id) that the lock/modify/unlock protocol depends on.
"""

__version__ = "1.0.0"
