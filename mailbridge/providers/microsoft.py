"""
Microsoft 365 / Outlook email provider implementation.
Uses Microsoft Graph API for email access.
"""

import base64
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from ..errors import AuthError, MailSyncError, PartialMessageError, TransientNetworkError, UserActionError
from ..labels import map_microsoft_category, map_microsoft_folder
from ..mime import AttachmentInfo, strip_angle_brackets
from ..models import Draft, Email, FolderScope, ProviderKind, SendParams, SendResult, SyncOptions, SyncResult, \
    parse_addresses
from .base import DEFAULT_DRAFTS_MAX_MESSAGES, EmailProvider

logger = logging.getLogger(__name__)

GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

MESSAGE_SELECT = (
    "id,conversationId,internetMessageId,subject,bodyPreview,from,toRecipients,"
    "ccRecipients,bccRecipients,body,categories,isRead,flag,receivedDateTime,hasAttachments"
)
DRAFT_SELECT = "id,subject,bodyPreview,toRecipients,ccRecipients,bccRecipients,body"


def _join_recipients(recipients: Optional[List[Dict[str, Any]]]) -> str:
    addresses = [(r.get('emailAddress') or {}).get('address') for r in recipients or []]
    return ", ".join(addr for addr in addresses if addr)


def _recipient_list(value: Optional[str]) -> List[Dict[str, Any]]:
    recipients = []
    for name, addr in parse_addresses(value):
        address: Dict[str, str] = {'address': addr}
        if name:
            address['name'] = name
        recipients.append({'emailAddress': address})
    return recipients


def _parse_graph_datetime(value: Optional[str]) -> int:
    if not value:
        return int(datetime.now().timestamp())
    return int(datetime.fromisoformat(value.replace('Z', '+00:00')).timestamp())


def parse_graph_message(
    account_id: str,
    msg: Dict[str, Any],
    folder: FolderScope = FolderScope.INBOX
) -> Email:
    """
    Parse a Graph API message to an Email.

    Categories are kept by name; there is no remote category id.
    """
    sender = (msg.get('from') or {}).get('emailAddress') or {}
    body = msg.get('body') or {}
    content_type = body.get('contentType')

    return Email(
        id=msg['id'],
        account_id=account_id,
        thread_id=msg.get('conversationId') or msg['id'],
        message_id=msg.get('internetMessageId') or f"<{msg['id']}@outlook.com>",
        subject=msg.get('subject') or "",
        snippet=msg.get('bodyPreview') or "",
        from_name=sender.get('name') or "",
        from_email=sender.get('address') or "",
        to_addresses=_join_recipients(msg.get('toRecipients')),
        cc_addresses=_join_recipients(msg.get('ccRecipients')),
        bcc_addresses=_join_recipients(msg.get('bccRecipients')),
        body_text=(body.get('content') or "") if content_type == 'text' else "",
        body_html=(body.get('content') or "") if content_type == 'html' else "",
        labels=list(msg.get('categories') or []),
        is_read=bool(msg.get('isRead')),
        is_starred=(msg.get('flag') or {}).get('flagStatus') == 'flagged',
        received_at=_parse_graph_datetime(msg.get('receivedDateTime')),
        folder=folder
    )


class MicrosoftProvider(EmailProvider):
    """
    Microsoft 365 / Outlook email provider using Graph API.

    Messages are listed per folder with a field projection; attachments are
    only requested for messages flagged ``hasAttachments``.
    """

    def __init__(
        self,
        *args,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        **kwargs
    ):
        """
        Initialize Microsoft provider.

        Args:
            transport: Optional httpx transport (used by tests)
            timeout: Per-request timeout in seconds
        """
        super().__init__(*args, **kwargs)
        self._transport = transport
        self.timeout = timeout

    @property
    def provider_kind(self) -> ProviderKind:
        return ProviderKind.MICROSOFT

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            return (response.json().get('error') or {}).get('message') or default
        except ValueError:
            return default

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        json_data: Optional[Dict] = None
    ) -> Dict[str, Any]:
        """
        Make authenticated request to Graph API.

        Raises:
            AuthError: On 401/403 or when no token is available
            TransientNetworkError: On any other HTTP or connection failure
        """
        access_token = await self._get_access_token()

        url = f"{GRAPH_BASE_URL}{endpoint}"
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json"
        }

        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    json=json_data,
                    timeout=self.timeout
                )
            except httpx.HTTPError as e:
                raise TransientNetworkError(f"Microsoft Graph request failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthError(self._error_message(response, "Not authorized"))
        if response.is_error:
            raise TransientNetworkError(
                self._error_message(response, f"Microsoft API error: {response.status_code}"),
                status_code=response.status_code
            )

        return response.json() if response.content else {}

    # ---- Sync ----

    async def _sync(self, options: SyncOptions) -> SyncResult:
        await self._sync_labels()
        return await self._sync_folder('inbox', FolderScope.INBOX, options)

    async def _sync_sent(self, options: SyncOptions) -> SyncResult:
        return await self._sync_folder('sentitems', FolderScope.SENT, options)

    async def _sync_labels(self) -> int:
        """Upsert user mail folders and master categories as labels."""
        count = 0
        try:
            folders = await self._make_request('GET', "/me/mailFolders?$top=100")
            for folder in folders.get('value') or []:
                label = map_microsoft_folder(self.account_id, folder)
                if label:
                    self.store.upsert_label(label)
                    count += 1

            categories = await self._make_request('GET', "/me/outlook/masterCategories")
            for category in categories.get('value') or []:
                label = map_microsoft_category(self.account_id, category)
                if label:
                    self.store.upsert_label(label)
                    count += 1
        except TransientNetworkError as e:
            self.log.warning(f"Error syncing labels: {e}")

        self.log.debug(f"Synced {count} Microsoft labels")
        return count

    def _category_label_ids(self, categories: List[str]) -> List[str]:
        """Resolve category names to local label ids by name match."""
        label_ids = []
        for name in categories:
            label = self.store.get_label_by_name(self.account_id, name, label_type='user')
            if label:
                label_ids.append(label.id)
        return label_ids

    async def _sync_folder(self, folder_name: str, folder: FolderScope, options: SyncOptions) -> SyncResult:
        inbox = folder == FolderScope.INBOX
        data = await self._make_request(
            'GET',
            f"/me/mailFolders/{folder_name}/messages"
            f"?$top={self._max_messages(options)}"
            f"&$orderby=receivedDateTime desc"
            f"&$select={MESSAGE_SELECT}"
        )
        messages = data.get('value') or []

        seen_ids = set()
        synced = 0
        for msg in messages:
            try:
                email = parse_graph_message(self.account_id, msg, folder)
            except (KeyError, TypeError, ValueError) as e:
                self.log.warning(str(PartialMessageError(str(msg.get('id', '?')), f"parse failed: {e}")))
                continue

            self._store_email(email, self._category_label_ids(email.labels), unarchive=inbox)
            if msg.get('hasAttachments'):
                await self._fetch_attachments(email.id)

            seen_ids.add(email.id)
            synced += 1

        if inbox:
            self._reconcile(seen_ids)

        return SyncResult(synced=synced, total=len(messages))

    async def _fetch_attachments(self, email_id: str) -> None:
        """Store the inline images of a message."""
        try:
            data = await self._make_request('GET', f"/me/messages/{email_id}/attachments")
        except TransientNetworkError as e:
            self.log.warning(f"Failed to fetch attachments for {email_id}: {e}")
            return

        for att in data.get('value') or []:
            info = AttachmentInfo(
                filename=att.get('name') or 'attachment',
                mime_type=att.get('contentType') or 'application/octet-stream',
                size=att.get('size') or 0,
                content_id=strip_angle_brackets(att.get('contentId'))
            )
            if not info.is_inline_image:
                continue
            try:
                content = base64.b64decode(att.get('contentBytes') or '')
            except ValueError as e:
                self.log.warning(f"Skipping attachment {info.filename} of {email_id}: {e}")
                continue
            self._store_inline_image(email_id, info, content)

    async def _sync_drafts(self, options: SyncOptions) -> SyncResult:
        data = await self._make_request(
            'GET',
            f"/me/mailFolders/drafts/messages"
            f"?$top={self._max_messages(options, DEFAULT_DRAFTS_MAX_MESSAGES)}"
            f"&$orderby=lastModifiedDateTime desc"
            f"&$select={DRAFT_SELECT}"
        )
        drafts = data.get('value') or []

        for draft in drafts:
            self.store.upsert_draft(Draft(
                id=f"microsoft-draft:{draft['id']}",
                account_id=self.account_id,
                remote_id=draft['id'],
                to_addresses=_join_recipients(draft.get('toRecipients')),
                cc_addresses=_join_recipients(draft.get('ccRecipients')),
                bcc_addresses=_join_recipients(draft.get('bccRecipients')),
                subject=draft.get('subject') or "",
                body=(draft.get('body') or {}).get('content') or ""
            ))

        return SyncResult(synced=len(drafts), total=len(drafts))

    # ---- Actions ----

    async def _action(self, method: str, endpoint: str, json_data: Optional[Dict] = None) -> None:
        try:
            await self._make_request(method, endpoint, json_data)
        except TransientNetworkError as e:
            raise UserActionError(str(e)) from e

    async def _update_message(self, email_id: str, updates: Dict[str, Any]) -> None:
        await self._action('PATCH', f"/me/messages/{email_id}", updates)

    async def _move_message(self, email_id: str, destination: str) -> None:
        await self._action('POST', f"/me/messages/{email_id}/move", {'destinationId': destination})

    async def mark_read(self, email_id: str) -> None:
        await self._update_message(email_id, {'isRead': True})

    async def mark_unread(self, email_id: str) -> None:
        await self._update_message(email_id, {'isRead': False})

    async def star(self, email_id: str) -> None:
        await self._update_message(email_id, {'flag': {'flagStatus': 'flagged'}})

    async def unstar(self, email_id: str) -> None:
        await self._update_message(email_id, {'flag': {'flagStatus': 'notFlagged'}})

    async def archive(self, email_id: str) -> None:
        await self._move_message(email_id, 'archive')

    async def unarchive(self, email_id: str) -> None:
        await self._move_message(email_id, 'inbox')

    async def trash(self, email_id: str) -> None:
        await self._move_message(email_id, 'deleteditems')

    async def untrash(self, email_id: str) -> None:
        await self._move_message(email_id, 'inbox')

    async def permanent_delete(self, email_id: str) -> None:
        await self._action('DELETE', f"/me/messages/{email_id}")

    async def delete_draft(self, draft_id: str) -> None:
        await self._action('DELETE', f"/me/messages/{draft_id}")

    async def send(self, params: SendParams) -> SendResult:
        message: Dict[str, Any] = {
            'subject': params.subject,
            'body': {'contentType': 'html', 'content': params.body},
            'toRecipients': _recipient_list(params.to),
        }
        if params.cc:
            message['ccRecipients'] = _recipient_list(params.cc)
        if params.bcc:
            message['bccRecipients'] = _recipient_list(params.bcc)

        if params.attachments:
            message['attachments'] = [
                {
                    '@odata.type': '#microsoft.graph.fileAttachment',
                    'name': att.filename,
                    'contentType': att.mime_type,
                    'contentBytes': base64.b64encode(att.content).decode('ascii'),
                }
                for att in params.attachments
            ]

        if params.in_reply_to:
            headers = [{'name': 'In-Reply-To', 'value': params.in_reply_to}]
            if params.references:
                headers.append({'name': 'References', 'value': params.references})
            message['internetMessageHeaders'] = headers

        try:
            await self._make_request('POST', "/me/sendMail", {'message': message})
        except (AuthError, TransientNetworkError) as e:
            self.log.error(f"Send failed: {e}")
            return SendResult(success=False, error=str(e))

        # sendMail returns 202 without the created message
        return SendResult(success=True)

    async def validate_credentials(self) -> bool:
        try:
            await self._make_request('GET', "/me")
            return True
        except MailSyncError as e:
            self.log.warning(f"Credential validation failed: {e}")
            return False
