"""
Private channel access control: join request decisions and eviction on expiry
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.models.channel_request import AUTO_SYSTEM, ChannelRequest, JoinRequestStatus
from apps.bot.utils import texts
from apps.bot.utils.time_helper import Clock, utcnow
from .exceptions import InvalidStateError, NotFoundError
from .notifier import CURRENT_MEMBER_STATUSES, ELEVATED_MEMBER_STATUSES, TelegramNotifier
from .repository import Repository

logger = logging.getLogger(__name__)


def admin_actor(actor: str) -> str:
    return f"admin:{actor}"


class ChannelGatekeeper:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        notifier: TelegramNotifier,
        channel_id: int,
        auto_approve: bool = True,
        clock: Clock = utcnow
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.channel_id = channel_id
        self.auto_approve = auto_approve
        self.clock = clock

    async def handle_join_request(
        self,
        telegram_id: int,
        chat_id: int,
        username: Optional[str] = None,
        chat_title: Optional[str] = None
    ) -> JoinRequestStatus:
        """Record a join request and, in auto mode, decide it by entitlement.

        A repeated request while one is pending refreshes that record instead
        of creating a second one.
        """
        now = self.clock()
        async with self.session_factory() as session:
            repo = Repository(session)
            request = await self._record_request(repo, telegram_id, chat_id, username, chat_title, now)
            user = await repo.get_user(telegram_id)

            if not self.auto_approve:
                logger.info(f"Join request {request.id} from {telegram_id} left for manual review")
                await self.notifier.send_message(telegram_id, texts.JOIN_PENDING_REVIEW)
                return JoinRequestStatus.PENDING

            if user is None:
                decision, reason, text = JoinRequestStatus.DECLINED, "unknown_user", texts.JOIN_UNKNOWN_USER
            elif user.is_entitled(now):
                decision, reason, text = JoinRequestStatus.APPROVED, "active_subscription", texts.JOIN_APPROVED
            else:
                decision, reason, text = JoinRequestStatus.DECLINED, "no_active_subscription", texts.JOIN_DECLINED

            try:
                await self._decide(repo, request.id, decision, AUTO_SYSTEM, reason)
            except InvalidStateError:
                logger.info(f"Join request {request.id} was decided concurrently, skipping")
                return JoinRequestStatus.PENDING
            except Exception as e:
                await repo.rollback()
                logger.error(f"Failed to {decision.value} join request {request.id} for user {telegram_id}: {e}")
                return JoinRequestStatus.PENDING

        await self.notifier.send_message(telegram_id, text)
        return decision

    async def _record_request(
        self,
        repo: Repository,
        telegram_id: int,
        chat_id: int,
        username: Optional[str],
        chat_title: Optional[str],
        now: datetime
    ) -> ChannelRequest:
        request = await repo.get_pending_join_request(telegram_id, chat_id)
        if request is None:
            try:
                request = await repo.create_join_request(
                    telegram_id=telegram_id,
                    chat_id=chat_id,
                    requested_at=now,
                    username=username,
                    chat_title=chat_title
                )
                await repo.append_audit_log(telegram_id, "join_request_received", f"chat={chat_id} request={request.id}")
                await repo.commit()
                return request
            except IntegrityError:
                # another update from the same user inserted the pending row first
                await repo.rollback()
                request = await repo.get_pending_join_request(telegram_id, chat_id)
                if request is None:
                    raise

        request.requested_at = now
        request.username = username or request.username
        request.chat_title = chat_title or request.chat_title
        await repo.commit()
        logger.info(f"Refreshed pending join request {request.id} for user {telegram_id}")
        return request

    async def approve_request(self, request_id: int, actor: str) -> ChannelRequest:
        return await self._admin_decide(request_id, JoinRequestStatus.APPROVED, actor)

    async def decline_request(self, request_id: int, actor: str) -> ChannelRequest:
        return await self._admin_decide(request_id, JoinRequestStatus.DECLINED, actor)

    async def list_requests(self, status: Optional[JoinRequestStatus] = None, limit: int = 100) -> List[ChannelRequest]:
        async with self.session_factory() as session:
            return await Repository(session).list_join_requests(status, limit)

    async def _admin_decide(self, request_id: int, decision: JoinRequestStatus, actor: str) -> ChannelRequest:
        async with self.session_factory() as session:
            repo = Repository(session)
            request = await self._decide(repo, request_id, decision, admin_actor(actor), "admin_decision")

        text = texts.JOIN_APPROVED if decision == JoinRequestStatus.APPROVED else texts.JOIN_DECLINED
        await self.notifier.send_message(request.telegram_id, text)
        return request

    async def _decide(
        self,
        repo: Repository,
        request_id: int,
        decision: JoinRequestStatus,
        processed_by: str,
        reason: str
    ) -> ChannelRequest:
        request = await repo.get_join_request(request_id, for_update=True)
        if request is None:
            raise NotFoundError(f"Join request {request_id} not found")
        if request.status != JoinRequestStatus.PENDING.value:
            raise InvalidStateError(f"Join request {request_id} is already {request.status}")

        if decision == JoinRequestStatus.APPROVED:
            await self.notifier.approve_join_request(request.chat_id, request.telegram_id)
        else:
            await self.notifier.decline_join_request(request.chat_id, request.telegram_id)

        now = self.clock()
        if not await repo.update_join_request_status(request, decision, processed_by, now):
            await repo.rollback()
            raise InvalidStateError(f"Join request {request_id} was decided concurrently")

        await repo.append_audit_log(
            request.telegram_id,
            f"join_request_{decision.value}",
            f"request={request_id} by={processed_by} reason={reason}"
        )
        await repo.commit()
        await repo.session.refresh(request)

        logger.info(f"Join request {request_id} for user {request.telegram_id} {decision.value} by {processed_by}")
        return request

    async def evict(self, telegram_id: int, reason: str = "subscription_expired") -> bool:
        """Remove a current member from the channel; administrators are never removed"""
        status = await self.notifier.get_member_status(self.channel_id, telegram_id)
        if status is None or status not in CURRENT_MEMBER_STATUSES:
            logger.info(f"User {telegram_id} is not a channel member ({status}), nothing to evict")
            return False

        if status in ELEVATED_MEMBER_STATUSES:
            logger.error(f"Refusing to evict {status} {telegram_id} from channel {self.channel_id}")
            return False

        await self.notifier.remove_member(self.channel_id, telegram_id)

        async with self.session_factory() as session:
            repo = Repository(session)
            await repo.append_audit_log(telegram_id, "channel_evicted", reason)
            await repo.commit()

        logger.info(f"Evicted user {telegram_id} from channel {self.channel_id}: {reason}")
        return True
