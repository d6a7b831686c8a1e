"""
Gmail email provider implementation.
Uses the Gmail REST API through google-api-python-client.
"""

import asyncio
import base64
import html
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from ..errors import AuthError, MailSyncError, PartialMessageError, TransientNetworkError, UserActionError
from ..labels import gmail_label_id, map_gmail_label
from ..mime import ExtractedBody, decode_base64url, encode_base64url, extract_gmail_payload, get_header, parse_from_header
from ..models import Draft, Email, FolderScope, OutgoingAttachment, ProviderKind, SendParams, SendResult, \
    SyncOptions, SyncResult
from .base import DEFAULT_DRAFTS_MAX_MESSAGES, EmailProvider

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[str], Any]


def build_raw_message(
    from_address: str,
    to: str,
    subject: str,
    body: str,
    cc: Optional[str] = None,
    bcc: Optional[str] = None,
    in_reply_to: Optional[str] = None,
    references: Optional[str] = None,
    attachments: Optional[Sequence[OutgoingAttachment]] = None,
    boundary: Optional[str] = None
) -> str:
    """
    Build an RFC 2822 message with CRLF line endings.

    The body is sent as HTML. With attachments the message becomes
    multipart/mixed and each attachment is base64 encoded.
    """
    lines = [f"From: {from_address}", f"To: {to}"]
    if cc:
        lines.append(f"Cc: {cc}")
    if bcc:
        lines.append(f"Bcc: {bcc}")
    lines.append(f"Subject: {subject}")
    if in_reply_to:
        lines.append(f"In-Reply-To: {in_reply_to}")
    if references:
        lines.append(f"References: {references}")
    lines.append("MIME-Version: 1.0")

    if not attachments:
        lines.append('Content-Type: text/html; charset="UTF-8"')
        lines.append("")
        lines.append(body)
        return "\r\n".join(lines)

    boundary = boundary or f"mailbridge_{uuid.uuid4().hex}"
    lines.append(f'Content-Type: multipart/mixed; boundary="{boundary}"')
    lines.append("")
    lines.append(f"--{boundary}")
    lines.append('Content-Type: text/html; charset="UTF-8"')
    lines.append("")
    lines.append(body)

    for attachment in attachments:
        encoded = base64.b64encode(attachment.content).decode('ascii')
        lines.append(f"--{boundary}")
        lines.append(f'Content-Type: {attachment.mime_type}; name="{attachment.filename}"')
        lines.append(f'Content-Disposition: attachment; filename="{attachment.filename}"')
        lines.append("Content-Transfer-Encoding: base64")
        lines.append("")
        lines.extend(encoded[i:i + 76] for i in range(0, len(encoded), 76))

    lines.append(f"--{boundary}--")
    return "\r\n".join(lines)


def build_raw_email(*args, **kwargs) -> str:
    """Build an RFC 2822 message and encode it as base64url for ``messages.send``."""
    return encode_base64url(build_raw_message(*args, **kwargs).encode('utf-8'))


def parse_gmail_message(
    account_id: str,
    msg: Dict[str, Any],
    folder: FolderScope = FolderScope.INBOX
) -> Tuple[Email, ExtractedBody]:
    """
    Convert a ``messages.get(format=full)`` resource to an Email.

    Args:
        account_id: Owning account
        msg: Gmail message resource
        folder: Local folder scope

    Returns:
        Tuple of (Email, extracted body with attachment descriptors)
    """
    payload = msg.get('payload') or {}
    headers = payload.get('headers') or []
    label_ids = msg.get('labelIds') or []
    from_name, from_email = parse_from_header(get_header(headers, 'From'))
    body = extract_gmail_payload(payload)

    email = Email(
        id=msg['id'],
        account_id=account_id,
        thread_id=msg.get('threadId'),
        message_id=get_header(headers, 'Message-ID'),
        subject=get_header(headers, 'Subject'),
        snippet=html.unescape(msg.get('snippet') or ''),
        from_name=from_name,
        from_email=from_email,
        to_addresses=get_header(headers, 'To'),
        cc_addresses=get_header(headers, 'Cc'),
        bcc_addresses=get_header(headers, 'Bcc'),
        body_text=body.text,
        body_html=body.html,
        labels=list(label_ids),
        is_read='UNREAD' not in label_ids,
        is_starred='STARRED' in label_ids,
        received_at=int(msg.get('internalDate') or 0) // 1000,
        folder=folder
    )
    return email, body


class GmailProvider(EmailProvider):
    """
    Gmail provider using the Gmail API.

    Message bodies are fetched with Gmail batch requests of ``batch_size``
    messages; blocking client calls run in the default executor.
    """

    def __init__(self, *args, service_factory: Optional[ServiceFactory] = None, **kwargs):
        """
        Initialize Gmail provider.

        Args:
            service_factory: Builds a Gmail service from an access token
                (default: googleapiclient discovery build)
        """
        super().__init__(*args, **kwargs)
        self._service_factory = service_factory or self._build_service

    @property
    def provider_kind(self) -> ProviderKind:
        return ProviderKind.GMAIL

    @staticmethod
    def _build_service(access_token: str):
        """Create a Gmail API service for a bearer token."""
        creds = Credentials(token=access_token)
        return build('gmail', 'v1', credentials=creds, cache_discovery=False)

    async def _get_service(self):
        token = await self._get_access_token()
        return self._service_factory(token)

    @staticmethod
    def _translate_error(error: HttpError) -> MailSyncError:
        status = error.resp.status if error.resp is not None else None
        message = error.reason or f"Gmail API error: {status}"
        if status == 401:
            return AuthError(message)
        return TransientNetworkError(message, status_code=status)

    async def _execute(self, request) -> Dict[str, Any]:
        """Execute an API request in the executor and translate HTTP errors."""
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, request.execute)
        except HttpError as e:
            raise self._translate_error(e) from e

    # ---- Sync ----

    async def _sync(self, options: SyncOptions) -> SyncResult:
        service = await self._get_service()
        await self._sync_labels(service)
        return await self._sync_label(service, 'INBOX', FolderScope.INBOX, options)

    async def _sync_sent(self, options: SyncOptions) -> SyncResult:
        service = await self._get_service()
        return await self._sync_label(service, 'SENT', FolderScope.SENT, options)

    async def _sync_labels(self, service) -> int:
        """Upsert the account's user labels. System labels are skipped."""
        response = await self._execute(service.users().labels().list(userId='me'))
        count = 0
        for remote in response.get('labels') or []:
            label = map_gmail_label(self.account_id, remote)
            if label is None:
                continue
            self.store.upsert_label(label)
            count += 1
        self.log.debug(f"Synced {count} Gmail labels")
        return count

    async def _sync_label(
        self,
        service,
        label_id: str,
        folder: FolderScope,
        options: SyncOptions
    ) -> SyncResult:
        inbox = folder == FolderScope.INBOX
        listing = await self._execute(service.users().messages().list(
            userId='me',
            maxResults=self._max_messages(options),
            labelIds=[label_id]
        ))
        refs = listing.get('messages') or []

        seen_ids = set()
        synced = 0
        for start in range(0, len(refs), self.batch_size):
            ids = [ref['id'] for ref in refs[start:start + self.batch_size]]
            for msg in await self._fetch_batch(service, ids):
                if msg.get('error'):
                    self.log.warning(str(PartialMessageError(msg.get('id', '?'), str(msg['error']))))
                    continue
                try:
                    email_id = await self._store_message(service, msg, folder, inbox)
                except (KeyError, TypeError, ValueError) as e:
                    self.log.warning(str(PartialMessageError(msg.get('id', '?'), f"parse failed: {e}")))
                    continue
                seen_ids.add(email_id)
                synced += 1

        if inbox:
            self._reconcile(seen_ids)

        return SyncResult(synced=synced, total=len(refs))

    async def _fetch_batch(self, service, message_ids: List[str]) -> List[Dict[str, Any]]:
        """
        Fetch full messages with one Gmail batch request.

        A message whose sub-request failed is returned as an error sentinel
        ``{'id': ..., 'error': ...}`` so the caller can skip it.
        """
        responses: Dict[str, Dict[str, Any]] = {}

        def callback(request_id, response, exception):
            if exception is not None:
                responses[request_id] = {'id': request_id, 'error': str(exception)}
            else:
                responses[request_id] = response

        def run():
            batch = service.new_batch_http_request(callback=callback)
            for message_id in message_ids:
                batch.add(
                    service.users().messages().get(userId='me', id=message_id, format='full'),
                    request_id=message_id
                )
            batch.execute()

        loop = asyncio.get_event_loop()
        try:
            await loop.run_in_executor(None, run)
        except HttpError as e:
            raise self._translate_error(e) from e

        return [
            responses.get(message_id) or {'id': message_id, 'error': 'missing from batch response'}
            for message_id in message_ids
        ]

    async def _store_message(self, service, msg: Dict[str, Any], folder: FolderScope, inbox: bool) -> str:
        email, body = parse_gmail_message(self.account_id, msg, folder)
        label_ids = [gmail_label_id(self.account_id, remote_id) for remote_id in email.labels]
        self._store_email(email, label_ids, unarchive=inbox)

        for info in body.inline_images:
            try:
                response = await self._execute(service.users().messages().attachments().get(
                    userId='me', messageId=msg['id'], id=info.attachment_id
                ))
                data = decode_base64url(response['data'])
            except (TransientNetworkError, KeyError, ValueError) as e:
                self.log.warning(f"Failed to fetch attachment {info.content_id} of {email.id}: {e}")
                continue
            self._store_inline_image(email.id, info, data)

        return email.id

    async def _sync_drafts(self, options: SyncOptions) -> SyncResult:
        service = await self._get_service()
        listing = await self._execute(service.users().drafts().list(
            userId='me',
            maxResults=self._max_messages(options, DEFAULT_DRAFTS_MAX_MESSAGES)
        ))
        refs = listing.get('drafts') or []

        synced = 0
        for ref in refs:
            try:
                draft = await self._execute(service.users().drafts().get(userId='me', id=ref['id'], format='full'))
            except TransientNetworkError as e:
                self.log.warning(str(PartialMessageError(ref['id'], str(e))))
                continue
            payload = (draft.get('message') or {}).get('payload') or {}
            headers = payload.get('headers') or []
            body = extract_gmail_payload(payload)
            self.store.upsert_draft(Draft(
                id=f"gmail-draft:{ref['id']}",
                account_id=self.account_id,
                remote_id=ref['id'],
                to_addresses=get_header(headers, 'To'),
                cc_addresses=get_header(headers, 'Cc'),
                bcc_addresses=get_header(headers, 'Bcc'),
                subject=get_header(headers, 'Subject'),
                body=body.html or body.text
            ))
            synced += 1

        return SyncResult(synced=synced, total=len(refs))

    # ---- Actions ----

    async def _action(self, build_request: Callable[[Any], Any]) -> None:
        service = await self._get_service()
        try:
            await self._execute(build_request(service))
        except TransientNetworkError as e:
            raise UserActionError(str(e)) from e

    async def _modify(self, email_id: str, add: Optional[List[str]] = None, remove: Optional[List[str]] = None):
        body: Dict[str, List[str]] = {}
        if add:
            body['addLabelIds'] = add
        if remove:
            body['removeLabelIds'] = remove
        await self._action(lambda s: s.users().messages().modify(userId='me', id=email_id, body=body))

    async def mark_read(self, email_id: str) -> None:
        await self._modify(email_id, remove=['UNREAD'])

    async def mark_unread(self, email_id: str) -> None:
        await self._modify(email_id, add=['UNREAD'])

    async def star(self, email_id: str) -> None:
        await self._modify(email_id, add=['STARRED'])

    async def unstar(self, email_id: str) -> None:
        await self._modify(email_id, remove=['STARRED'])

    async def archive(self, email_id: str) -> None:
        await self._modify(email_id, remove=['INBOX'])

    async def unarchive(self, email_id: str) -> None:
        await self._modify(email_id, add=['INBOX'])

    async def trash(self, email_id: str) -> None:
        await self._action(lambda s: s.users().messages().trash(userId='me', id=email_id))

    async def untrash(self, email_id: str) -> None:
        await self._action(lambda s: s.users().messages().untrash(userId='me', id=email_id))

    async def permanent_delete(self, email_id: str) -> None:
        await self._action(lambda s: s.users().messages().delete(userId='me', id=email_id))

    async def delete_draft(self, draft_id: str) -> None:
        await self._action(lambda s: s.users().drafts().delete(userId='me', id=draft_id))

    async def send(self, params: SendParams) -> SendResult:
        raw = build_raw_email(
            from_address=params.from_address or self.account.display_address,
            to=params.to,
            subject=params.subject,
            body=params.body,
            cc=params.cc,
            bcc=params.bcc,
            in_reply_to=params.in_reply_to,
            references=params.references,
            attachments=params.attachments
        )
        message: Dict[str, Any] = {'raw': raw}
        if params.thread_id:
            message['threadId'] = params.thread_id

        try:
            service = await self._get_service()
            result = await self._execute(service.users().messages().send(userId='me', body=message))
        except (AuthError, TransientNetworkError) as e:
            self.log.error(f"Send failed: {e}")
            return SendResult(success=False, error=str(e))

        return SendResult(success=True, message_id=result.get('id'), thread_id=result.get('threadId'))

    async def validate_credentials(self) -> bool:
        try:
            service = await self._get_service()
            await self._execute(service.users().getProfile(userId='me'))
            return True
        except MailSyncError as e:
            self.log.warning(f"Credential validation failed: {e}")
            return False
