"""
HTTP clients for the conferencing providers.
"""

from app.integrations.lark_client import LarkClient
from app.integrations.tencent_client import TencentMeetingClient

__all__ = ["LarkClient", "TencentMeetingClient"]
