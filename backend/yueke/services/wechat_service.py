"""微信订阅消息网关：access_token 缓存与订阅消息发送。

发送失败不抛异常，统一返回 SendResult，由消息分发服务落库并决定是否重试。
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from redis.exceptions import RedisError

from yueke.core.config import settings
from yueke.db.base import redis
from yueke.services.notification_service import SendResult

logger = logging.getLogger(__name__)

TOKEN_URL = "https://api.weixin.qq.com/cgi-bin/token"
SUBSCRIBE_SEND_URL = "https://api.weixin.qq.com/cgi-bin/message/subscribe/send"

# access_token 无效或过期
ERRCODE_INVALID_TOKEN = 40001


class WechatSubscribeSender:
    """封装微信订阅消息发送"""

    def __init__(self, cache=None, transport: Optional[httpx.AsyncBaseTransport] = None,
                 dry_run: Optional[bool] = None) -> None:
        self.app_id = settings.WECHAT_APP_ID
        self.app_secret = settings.WECHAT_APP_SECRET
        # 比微信默认的 7200 秒提前失效，避免使用微信端已过期的 token
        self.access_token_ttl = settings.WECHAT_ACCESS_TOKEN_TTL
        # 干跑模式：不触达微信，直接视为发送成功
        self.dry_run = settings.WECHAT_DRY_RUN if dry_run is None else dry_run
        self.cache = cache if cache is not None else redis
        self.transport = transport

    @property
    def cache_key(self) -> str:
        return f"wx:access_token:{self.app_id}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=10, transport=self.transport)

    # ========== 基础能力 ========== #
    async def get_access_token(self) -> Optional[str]:
        """获取并缓存全局 access_token。失败时返回 None。"""
        try:
            cached = await self.cache.get(self.cache_key)
            if cached:
                return cached
        except RedisError as exc:
            logger.warning("从 Redis 读取 access_token 失败，将向微信重新请求: %s", exc)

        params = {
            "grant_type": "client_credential",
            "appid": self.app_id,
            "secret": self.app_secret,
        }
        try:
            async with self._client() as client:
                resp = await client.get(TOKEN_URL, params=params)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("获取微信 access_token 失败（网络错误）: %s", exc)
            return None

        errcode = data.get("errcode")
        if errcode not in (None, 0):
            logger.error("获取微信 access_token 失败: errcode=%s, errmsg=%s", errcode, data.get("errmsg"))
            return None

        access_token = data.get("access_token")
        if not access_token:
            logger.error("微信返回了 token，但 access_token 字段为空")
            return None

        try:
            await self.cache.set(self.cache_key, access_token, ex=self.access_token_ttl)
            logger.info("成功获取新 access_token（缓存 TTL=%s 秒）", self.access_token_ttl)
        except RedisError as exc:
            logger.warning("缓存 access_token 到 Redis 失败，但 token 有效可用: %s", exc)

        return access_token

    async def _drop_cached_token(self) -> None:
        try:
            await self.cache.delete(self.cache_key)
        except RedisError as exc:
            logger.warning("清除 access_token 缓存失败: %s", exc)

    # ========== 订阅消息发送 ========== #
    async def send(
        self,
        template_id: str,
        receiver_openid: str,
        message_data: Dict[str, Any],
        page_path: Optional[str] = None,
    ) -> SendResult:
        for field_name, field_data in (message_data or {}).items():
            if isinstance(field_data, dict) and "value" in field_data:
                value = field_data.get("value")
                if value is None or (isinstance(value, str) and not value.strip()):
                    logger.error(f"订阅消息数据验证失败: {field_name}.value 为空")
                    return SendResult(False, "INVALID_DATA", f"{field_name}.value 为空")

        payload: Dict[str, Any] = {
            "touser": receiver_openid,
            "template_id": template_id,
            "data": message_data,
        }
        if page_path:
            payload["page"] = page_path

        if self.dry_run:
            logger.info(f"[干跑] 订阅消息: template_id={template_id}, openid={mask_openid(receiver_openid)}")
            return SendResult(True)

        access_token = await self.get_access_token()
        if not access_token:
            return SendResult(False, "NO_ACCESS_TOKEN", "无法获取 access_token")

        # 最多2次：第1次用缓存token，若40001则刷新后第2次
        for attempt in range(2):
            try:
                async with self._client() as client:
                    resp = await client.post(SUBSCRIBE_SEND_URL, params={"access_token": access_token}, json=payload)
                resp_data = resp.json()
            except (httpx.HTTPError, ValueError) as exc:
                logger.error("订阅消息发送失败（请求错误）: %s", exc)
                return SendResult(False, "HTTP_ERROR", str(exc))

            errcode = resp_data.get("errcode", -1)
            errmsg = resp_data.get("errmsg")

            if errcode == 0:
                return SendResult(True)

            if errcode == ERRCODE_INVALID_TOKEN and attempt == 0:
                logger.warning("Access Token 失效（errcode=40001），清除缓存并重新获取")
                await self._drop_cached_token()
                access_token = await self.get_access_token()
                if not access_token:
                    return SendResult(False, str(ERRCODE_INVALID_TOKEN), "Token 无效且无法刷新")
                continue

            logger.error(f"订阅消息发送失败: errcode={errcode}, errmsg={errmsg}")
            return SendResult(False, str(errcode), errmsg)

        return SendResult(False, str(ERRCODE_INVALID_TOKEN), "Token 刷新后仍无效")


def mask_openid(openid: Optional[str]) -> str:
    if not openid:
        return ""
    if len(openid) <= 8:
        return openid
    return f"{openid[:4]}****{openid[-4:]}"
