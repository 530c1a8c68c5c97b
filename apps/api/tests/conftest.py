from typing import Optional
from unittest.mock import MagicMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, configure_sqlite_transactions
from main import app
from models.credit_account import CreditAccount
from models.feed_post import FeedPost
from models.reference_image import ReferenceImage
from models.trained_model import TrainedModel
from models.user import User
from routers import rate_limit
from services import credits
from services.asset_storage import AssetFinalizer, LocalAssetStore
from services.generation import GenerationOrchestrator
from services.prediction_client import PredictionProvider

from fakes import PNG_BYTES, no_sleep


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = configure_sqlite_transactions(create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'studio.db'}"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def seed_studio(session_maker):
    """Create a user (optionally with credits, a trained model, reference images) and one post."""

    async def _seed(
        user_id: str = "studio-user",
        *,
        balance: Optional[int] = 0,
        trained_model: bool = True,
        reference_images: int = 0,
        post_status: str = "draft",
        extra_lora_url: Optional[str] = None,
        extra_lora_scale: Optional[float] = None,
    ) -> str:
        async with session_maker() as db:
            db.add(User(id=user_id, email=f"{user_id}@example.com", gender="female"))
            await db.flush()
            if balance is not None:
                db.add(CreditAccount(user_id=user_id, balance=0, total_purchased=0, total_used=0))
            if trained_model:
                db.add(
                    TrainedModel(
                        user_id=user_id,
                        trigger_word="ohwx",
                        replicate_version_id="owner/flux-lora:abc123",
                        lora_weights_url="https://weights.example.com/ohwx.safetensors",
                        lora_scale=1.0,
                        extra_lora_url=extra_lora_url,
                        extra_lora_scale=extra_lora_scale,
                        training_status="completed",
                    )
                )
            for index in range(reference_images):
                db.add(
                    ReferenceImage(
                        user_id=user_id,
                        image_url=f"https://cdn.example.com/ref-{index}.jpg",
                        display_order=index,
                    )
                )
            post = FeedPost(user_id=user_id, post_type="portrait", caption="Morning coffee ritual", status=post_status)
            db.add(post)
            await db.commit()
            post_id = post.id
        if balance:
            async with session_maker() as db:
                await credits.add_credits(user_id, db, amount=balance, kind="bonus", description="Welcome credits")
        return post_id

    return _seed


@pytest.fixture
def add_post(session_maker):
    """Add another draft post for an already seeded user."""

    async def _add(user_id: str = "studio-user", *, post_type: str = "portrait", caption: str = "Golden hour") -> str:
        async with session_maker() as db:
            post = FeedPost(user_id=user_id, post_type=post_type, caption=caption, status="draft")
            db.add(post)
            await db.commit()
            return post.id

    return _add


@pytest.fixture
def asset_requests():
    return []


@pytest.fixture
def finalizer(tmp_path, asset_requests):
    def handler(request: httpx.Request) -> httpx.Response:
        asset_requests.append(str(request.url))
        if "missing" in request.url.path:
            return httpx.Response(404)
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

    return AssetFinalizer(
        LocalAssetStore(str(tmp_path / "assets"), "http://test/assets"),
        max_attempts=2,
        retry_delay_seconds=0,
        transport=httpx.MockTransport(handler),
        sleep=no_sleep,
    )


@pytest.fixture
def make_orchestrator(session_maker, finalizer):
    def _make(provider: PredictionProvider, *, poll_max_attempts: int = 3, webhook_enabled: bool = False):
        return GenerationOrchestrator(
            session_maker=session_maker,
            provider=provider,
            finalizer=finalizer,
            poll_interval_seconds=0,
            poll_max_attempts=poll_max_attempts,
            sleep=no_sleep,
            enqueue=MagicMock(),
            webhook_enabled=webhook_enabled,
        )

    return _make
