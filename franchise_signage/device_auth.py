"""
@device_auth
Phone OTP pairing for playback devices.

A pending code lives in the document's ``otpTokens`` collection keyed by
normalized phone number. Codes are single use, expire after a fixed window
and are purged after the last allowed failed attempt. A successful verify
consumes the code and creates or refreshes the franchise in the same
transaction.
"""

import re
import hmac
import time
import uuid
import random
import logging
from typing import Callable, Dict, Optional

from .database import DocumentStore
from .errors import (DispatchFailed, OtpExhausted, OtpExpired, OtpMismatch, StoreBusy,
                     StoreWriteError, ValidationError)
from .models import SEQUENTIAL, MutationResult, utc_now_iso

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r'^(91)?[6-9]\d{9}$')
_BASE36 = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ'


def normalize_phone(phone) -> str:
    """Strip separators and return the number with its ``91`` country prefix."""
    if not phone or not isinstance(phone, str):
        raise ValidationError('Phone number is required')
    clean = re.sub(r'[\s+\-]', '', phone)
    if not PHONE_PATTERN.match(clean):
        raise ValidationError('Invalid phone number format. Use 10 digit Indian mobile number.')
    return clean if len(clean) == 12 else f'91{clean}'


def _base36(number: int) -> str:
    digits = ''
    while True:
        number, remainder = divmod(number, 36)
        digits = _BASE36[remainder] + digits
        if number == 0:
            return digits


class DevicePairing:
    """OTP send/verify state machine bound to the document store."""

    def __init__(self, store: DocumentStore, sender, clock: Callable[[], float] = time.time,
                 rng: Optional[random.Random] = None, expiry_seconds: int = 600,
                 max_attempts: int = 3, code_length: int = 4,
                 retract_timeout: float = 5.0):
        self.store = store
        self.sender = sender
        self.clock = clock
        self.rng = rng or random.SystemRandom()
        self.expiry_seconds = expiry_seconds
        self.max_attempts = max_attempts
        self.code_length = code_length
        self.retract_timeout = retract_timeout

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def generate_otp(self) -> str:
        return ''.join(str(self.rng.randrange(10)) for _ in range(self.code_length))

    # -------------------------------------------------------------------------
    # Send / resend
    # -------------------------------------------------------------------------
    def send_otp(self, phone: str) -> Dict:
        """@otp_send - Issue a fresh code and dispatch it

        Any pending code for the phone is replaced. If dispatch fails the new
        record is withdrawn again and DispatchFailed is raised.
        """
        full_phone = normalize_phone(phone)
        code = self.generate_otp()
        now_ms = self._now_ms()
        record = {
            'otp': code,
            'expiresAt': now_ms + self.expiry_seconds * 1000,
            'attempts': 0,
            'createdAt': utc_now_iso(),
        }

        def store_record(db):
            tokens = db.setdefault('otpTokens', {})
            for key in [k for k, v in tokens.items() if now_ms > v.get('expiresAt', 0)]:
                del tokens[key]
            tokens[full_phone] = record
            return MutationResult(audit=('OTP_SENT', {'phone': full_phone}))

        self.store.transact(store_record)

        try:
            result = self.sender.send(full_phone, code) or {}
        except Exception as e:
            logger.error(f"[DeviceAuth] SMS dispatch raised for {full_phone}: {e}")
            result = {'success': False, 'message': 'Failed to send OTP'}

        if not result.get('success'):
            self._retract(full_phone, record)
            raise DispatchFailed(result.get('message') or 'Failed to send OTP')

        logger.info(f"[DeviceAuth] OTP sent successfully to {full_phone}")
        return {'phone': full_phone, 'expiresAt': record['expiresAt']}

    resend_otp = send_otp

    def _retract(self, full_phone: str, record: Dict) -> None:
        def drop_record(db):
            tokens = db.get('otpTokens') or {}
            stored = tokens.get(full_phone)
            # only withdraw our own record, not one issued by a later send
            if stored and stored.get('otp') == record['otp'] and stored.get('createdAt') == record['createdAt']:
                del tokens[full_phone]

        # the undelivered code must not outlive a busy store
        while True:
            try:
                self.store.transact(drop_record, timeout=self.retract_timeout)
                break
            except StoreBusy:
                logger.warning(f"[DeviceAuth] Store busy while withdrawing OTP for {full_phone}, retrying")
            except StoreWriteError as e:
                logger.error(f"[DeviceAuth] Could not withdraw OTP for {full_phone}: {e}")
                return
        logger.warning(f"[DeviceAuth] Withdrew undelivered OTP for {full_phone}")

    # -------------------------------------------------------------------------
    # Verify
    # -------------------------------------------------------------------------
    def verify_otp(self, phone: str, code: str, device_name: Optional[str] = None,
                   location: Optional[str] = None) -> Dict:
        """@otp_verify - Check a code and pair the device

        Returns the device credentials. Raises OtpExpired when no usable code
        exists, OtpExhausted when attempts ran out and OtpMismatch (with the
        remaining attempts) for a wrong code.
        """
        full_phone = normalize_phone(phone)
        if code is None or str(code).strip() == '':
            raise ValidationError('Phone and OTP are required')
        candidate = str(code).strip()

        # Cheap rejection without taking the write lock
        if full_phone not in (self.store.load(fresh=True).get('otpTokens') or {}):
            raise OtpExpired()

        now_ms = self._now_ms()

        def verify(db):
            tokens = db.setdefault('otpTokens', {})
            stored = tokens.get(full_phone)
            if stored is None:
                return MutationResult(value=('missing', None))
            if now_ms > stored.get('expiresAt', 0):
                del tokens[full_phone]
                return MutationResult(value=('expired', None))
            attempts = stored.get('attempts', 0)
            if attempts >= self.max_attempts:
                del tokens[full_phone]
                return MutationResult(value=('exhausted', None))
            if not hmac.compare_digest(str(stored.get('otp', '')).encode(), candidate.encode()):
                attempts += 1
                if attempts >= self.max_attempts:
                    del tokens[full_phone]
                else:
                    stored['attempts'] = attempts
                return MutationResult(value=('mismatch', self.max_attempts - attempts))

            del tokens[full_phone]
            return self._upsert_partner(db, full_phone, device_name, location)

        status, payload = self.store.transact(verify)

        if status == 'missing':
            raise OtpExpired()
        if status == 'expired':
            raise OtpExpired('OTP has expired. Please request a new OTP.')
        if status == 'exhausted':
            raise OtpExhausted()
        if status == 'mismatch':
            raise OtpMismatch(payload)

        logger.info(f"[DeviceAuth] {'New partner registered' if payload['isNewPartner'] else 'Partner logged in'}: {full_phone}")
        return payload

    def _upsert_partner(self, db: Dict, full_phone: str, device_name: Optional[str],
                        location: Optional[str]) -> MutationResult:
        now_iso = utc_now_iso()
        franchises = db.setdefault('franchises', [])
        partner = next((f for f in franchises if f.get('phone') == full_phone), None)

        if partner is not None:
            partner['lastLogin'] = now_iso
            partner['status'] = 'online'
            if device_name:
                partner['name'] = device_name
            if location:
                partner['location'] = location
            is_new = False
            audit = ('DEVICE_LOGIN', {'phone': full_phone})
        else:
            taken = {f.get('deviceId') for f in franchises}
            device_id = f'DEV-{_base36(self._now_ms())}'
            suffix = 1
            while device_id in taken:
                device_id = f'DEV-{_base36(self._now_ms())}-{suffix}'
                suffix += 1

            partner = {
                'id': str(uuid.uuid4()),
                'phone': full_phone,
                'name': device_name or f'Partner {full_phone[-4:]}',
                'location': location or 'Not specified',
                'deviceId': device_id,
                'token': str(uuid.uuid4()),
                'status': 'online',
                'playbackOrder': SEQUENTIAL,
                'lastSync': now_iso,
                'lastLogin': now_iso,
                'createdAt': now_iso,
                'authMethod': 'phone_otp',
            }
            franchises.append(partner)
            is_new = True
            audit = ('DEVICE_REGISTER', {'phone': full_phone, 'deviceId': device_id})

        return MutationResult(
            value=('ok', {
                'deviceToken': partner['token'],
                'deviceId': partner['deviceId'],
                'partnerId': partner['id'],
                'partnerName': partner['name'],
                'location': partner.get('location'),
                'isNewPartner': is_new,
            }),
            audit=audit,
        )

    def check_status(self, phone: str) -> Dict:
        full_phone = normalize_phone(phone)
        data = self.store.load()
        partner = next((f for f in data.get('franchises') or [] if f.get('phone') == full_phone), None)
        return {
            'isRegistered': partner is not None,
            'partnerName': partner.get('name') if partner else None,
        }
