"""Thin wrapper over the hosted Supabase project: batch RPCs, bulk import, lookups."""
import logging

from httpx import RemoteProtocolError
from supabase import create_client, Client

logger = logging.getLogger(__name__)

BATCH_RPC_BY_KIND = {
    "deposit": "process_offline_deposits",
    "withdrawal": "process_offline_withdrawals",
    "loan_payment": "process_offline_loan_payments",
}
# PostgREST returns at most this many rows per request by default.
PROFILE_PAGE_SIZE = 1000


def sb_exec(qb, attempts=3):
    """
    Execute a Supabase query builder with simple retries to handle transient
    'RemoteProtocolError: Server disconnected' issues.
    """
    for i in range(attempts):
        try:
            return qb.execute()
        except RemoteProtocolError as e:
            if i < attempts - 1:
                logger.info("Supabase connection dropped (attempt %d/%d): %s", i + 1, attempts, e)
                continue
            raise


class GatewayError(Exception):
    """The hosted backend answered with something we cannot interpret."""


class SupabaseGateway:
    def __init__(self, url=None, key=None, client: Client = None):
        self.url = url
        self.key = key
        self._client = client

    @classmethod
    def from_config(cls, config):
        return cls(config.get("SUPABASE_URL"), config.get("SUPABASE_KEY"))

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self.url or not self.key:
                raise GatewayError("Supabase credentials not set in environment.")
            self._client = create_client(self.url, self.key)
        return self._client

    def batch_process(self, kind, transactions):
        """Submit one chunk of queued transactions to the batch RPC for ``kind``.

        Returns ``{'processed': [...], 'failed': [...]}`` as reported by the
        server. Transport errors propagate to the caller.
        """
        try:
            fn = BATCH_RPC_BY_KIND[kind]
        except KeyError:
            raise ValueError(f"Unknown transaction kind: {kind}")
        resp = sb_exec(self.client.rpc(fn, {"transactions": transactions}))
        data = resp.data
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected response from {fn}: {data!r}")
        return {
            "processed": data.get("processed") or [],
            "failed": data.get("failed") or [],
        }

    def bulk_create_users(self, records, send_welcome_emails, source_label, actor_id):
        resp = sb_exec(self.client.rpc("bulk_import_users", {
            "users": records,
            "imported_by": actor_id,
            "send_emails": bool(send_welcome_emails),
            "file_name": source_label,
        }))
        data = resp.data
        if not isinstance(data, dict):
            raise GatewayError(f"Unexpected response from bulk_import_users: {data!r}")
        failed_list = data.get("failed_list")
        if failed_list is None:
            failed_list = data.get("failedList") or []
        return {
            "success": int(data.get("success") or 0),
            "failed": int(data.get("failed") or 0),
            "skipped": int(data.get("skipped") or 0),
            "failed_list": [
                {"email": item.get("email", ""), "reason": item.get("reason", "")}
                for item in failed_list
            ],
        }

    def list_user_emails(self, page_size=PROFILE_PAGE_SIZE):
        """All profile emails, fetched page by page past the server's row cap."""
        emails = []
        offset = 0
        while True:
            resp = sb_exec(
                self.client.table("profiles")
                .select("email")
                .order("id")
                .range(offset, offset + page_size - 1)
            )
            rows = resp.data if resp.data else []
            emails.extend(row["email"] for row in rows if row.get("email"))
            if len(rows) < page_size:
                return emails
            offset += page_size

    def get_user(self, access_token):
        """Resolve a Supabase access token to ``{id, email, is_admin}`` or None."""
        user_resp = self.client.auth.get_user(access_token)
        user = getattr(user_resp, "user", None)
        if user is None:
            return None
        profile_resp = sb_exec(
            self.client.table("profiles").select("id,email,is_admin").eq("id", user.id).limit(1)
        )
        profile = profile_resp.data[0] if profile_resp.data else {}
        return {
            "id": user.id,
            "email": profile.get("email") or user.email,
            "is_admin": bool(profile.get("is_admin")),
        }
