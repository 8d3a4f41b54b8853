"""
@sms_service
OTP delivery over SMS
"""

import logging

import requests

logger = logging.getLogger(__name__)


class MSG91Sender:
    """Sends OTP codes through the MSG91 v5 OTP API."""

    base_url = 'https://control.msg91.com/api/v5'

    def __init__(self, auth_key: str, template_id: str, timeout: int = 15):
        self.auth_key = auth_key
        self.template_id = template_id
        self.timeout = timeout

    def send(self, phone: str, code: str) -> dict:
        """
        Send ``code`` to ``phone``.

        Args:
            phone: Number with country code, e.g. 919876543210
            code: The OTP to deliver

        Returns:
            dict: ``{'success': bool, 'message': str}`` plus ``requestId`` on success
        """
        if not self.auth_key or not self.template_id:
            logger.warning("[MSG91] Credentials not configured")
            return {'success': False, 'message': 'SMS provider not configured'}

        try:
            response = requests.post(
                f'{self.base_url}/otp',
                params={
                    'template_id': self.template_id,
                    'mobile': phone,
                    'authkey': self.auth_key,
                    'otp': code,
                },
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout,
            )
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.error(f"[MSG91] Send OTP error for {phone}: {e}")
            return {'success': False, 'message': 'Failed to send OTP'}

        if data.get('type') == 'success':
            logger.info(f"[MSG91] OTP sent to {phone}")
            return {
                'success': True,
                'message': 'OTP sent successfully',
                'requestId': data.get('request_id'),
            }

        logger.warning(f"[MSG91] Provider rejected OTP for {phone}: {data}")
        return {'success': False, 'message': data.get('message') or 'Failed to send OTP'}


class LogSender:
    """Development sender: writes the code to the log instead of sending it."""

    def send(self, phone: str, code: str) -> dict:
        logger.warning(f"[SMS] Development mode, OTP for {phone}: {code}")
        return {'success': True, 'message': 'OTP logged'}


def create_sender(config):
    """Pick the sender named by ``SMS_PROVIDER``."""
    if config.SMS_PROVIDER == 'log':
        return LogSender()
    return MSG91Sender(config.MSG91_AUTH_KEY, config.MSG91_TEMPLATE_ID)
