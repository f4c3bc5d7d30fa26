"""
Общие фикстуры: файловая SQLite через aiosqlite, локальное хранилище
во временной папке и фабрики для строк и задач.
"""
from datetime import timedelta
from typing import Callable, Optional

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

import app.db.all_models  # noqa: F401
from app.core.config import settings
from app.db.base import Base, utcnow
from app.models.job import Job
from app.models.model import Model
from app.models.model_row import ModelRow
from app.models.prompt_job import PromptGenerationJob
from app.models.variant_row import VariantRow
from app.services.provider_client import WaveSpeedClient


VALID_PROMPT = 'Swap the face and hair from the reference onto the target person'


@pytest.fixture(autouse=True)
def storage_root(tmp_path, monkeypatch):
    root = tmp_path / 'storage'
    root.mkdir()
    monkeypatch.setattr(settings, 'STORAGE_BACKEND', 'local')
    monkeypatch.setattr(settings, 'STORAGE_ROOT', str(root))
    monkeypatch.setattr(settings, 'PUBLIC_BASE_URL', 'http://testserver')
    return root


@pytest.fixture
def put_file(storage_root):
    def _put(path: str, data: bytes = b'image-bytes') -> str:
        full = storage_root / path
        full.parent.mkdir(parents=True, exist_ok=True)
        full.write_bytes(data)
        return path
    return _put


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f'sqlite+aiosqlite:///{tmp_path / "test.db"}')
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()


def make_provider(handler: Callable[[httpx.Request], httpx.Response]) -> WaveSpeedClient:
    return WaveSpeedClient(
        base_url='https://provider.test',
        api_key='test-key',
        retry_delay_s=0,
        transport=httpx.MockTransport(handler)
    )


class Seeder:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def _add(self, obj):
        async with self.session_factory() as db:
            db.add(obj)
            await db.commit()
            await db.refresh(obj)
        return obj

    async def model_row(
            self,
            *,
            owner_id: str = 'u1',
            team_id: str = 't1',
            ref_paths: Optional[list] = None,
            target_path: Optional[str] = 'uploads/u1/target.jpg',
            prompt: Optional[str] = VALID_PROMPT
    ) -> ModelRow:
        model = await self._add(Model(
            team_id=team_id,
            owner_id=owner_id,
            name='Anna',
            default_prompt=prompt,
            width=2048,
            height=2048
        ))
        return await self._add(ModelRow(
            model_id=model.id,
            ref_image_paths=ref_paths,
            target_image_path=target_path
        ))

    async def variant_row(
            self,
            *,
            user_id: str = 'u1',
            team_id: Optional[str] = 't1',
            ref_paths: Optional[list] = None,
            target_path: Optional[str] = 'uploads/u1/target.jpg',
            prompt: Optional[str] = VALID_PROMPT
    ) -> VariantRow:
        return await self._add(VariantRow(
            user_id=user_id,
            team_id=team_id,
            ref_image_paths=ref_paths,
            target_image_path=target_path,
            prompt=prompt,
            width=2048,
            height=2048
        ))

    async def job(
            self,
            *,
            row: Optional[ModelRow] = None,
            variant: Optional[VariantRow] = None,
            status: str = 'queued',
            age_s: float = 0,
            updated_age_s: Optional[float] = None,
            provider_request_id: Optional[str] = None,
            payload: Optional[dict] = None,
            user_id: str = 'u1',
            team_id: Optional[str] = 't1',
            **fields
    ) -> Job:
        now = utcnow()
        if payload is None:
            payload = {
                'ref_paths': ['uploads/u1/ref.jpg'],
                'target_path': 'uploads/u1/target.jpg',
                'prompt': VALID_PROMPT,
                'width': 2048,
                'height': 2048,
                'generation_model': 'seedream-v4-edit',
            }
        return await self._add(Job(
            user_id=user_id,
            team_id=team_id,
            row_id=row.id if row else None,
            model_id=row.model_id if row else None,
            variant_row_id=variant.id if variant else None,
            generation_model=payload.get('generation_model'),
            request_payload=payload,
            status=status,
            provider_request_id=provider_request_id,
            created_at=now - timedelta(seconds=age_s),
            updated_at=now - timedelta(seconds=age_s if updated_age_s is None else updated_age_s),
            **fields
        ))

    async def prompt_job(self, **fields) -> PromptGenerationJob:
        fields.setdefault('user_id', 'u1')
        fields.setdefault('target_url', 'https://cdn.test/target.jpg')
        fields.setdefault('ref_urls', ['https://cdn.test/ref.jpg'])
        return await self._add(PromptGenerationJob(**fields))

    async def get(self, model, obj_id):
        async with self.session_factory() as db:
            return await db.get(model, obj_id)


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


@pytest.fixture
def provider_factory():
    return make_provider
