from .gemini import GeminiClient
from .kie import KieVideoClient
from .pipeline.providers import ContentProvider, TrailerContentProvider
from .pipeline.storage import STORAGE_BACKEND, StorageProvider, build_storage_provider


class ProviderFactory:
    @staticmethod
    def get_storage(backend: str = STORAGE_BACKEND) -> StorageProvider:
        return build_storage_provider(backend)

    @staticmethod
    def get_content_provider(storage: StorageProvider) -> ContentProvider:
        return TrailerContentProvider(
            GeminiClient.from_env(),
            KieVideoClient.from_env(),
            storage,
        )
