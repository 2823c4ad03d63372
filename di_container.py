# coding_sandbox/di_container.py
from injector import Injector, Module, singleton, provider

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

import docker

from config import config
from database.models import Base
from database.crud import CRUD
from coding_agent.generator import LLMProjectGenerator, ProjectGenerator, TemplateProjectGenerator
from jobs.repository import InMemoryJobRepository, JobRepository, SqlAlchemyJobRepository
from jobs.service import JobService
from sandbox_manager.docker_client import DockerClient
from sandbox_manager.runtime import ContainerRuntime
from sandbox_manager.service import SandboxManagerService


class CoreModule(Module):
    @singleton
    @provider
    def provide_db_engine(self) -> Engine:
        return create_engine(config.DATABASE_URL)

    @singleton
    @provider
    def provide_db_session_maker(self, engine: Engine) -> sessionmaker:
        Base.metadata.create_all(engine)  # データベース初期化
        return sessionmaker(autocommit=False, autoflush=False, bind=engine)

    @singleton
    @provider
    def provide_crud(self, session_maker: sessionmaker) -> CRUD:
        return CRUD(session_maker)

    @singleton
    @provider
    def provide_job_repository(self, injector: Injector) -> JobRepository:
        if config.JOB_REPOSITORY == "sql":
            # SQL を使う場合だけエンジンを作る
            return SqlAlchemyJobRepository(injector.get(CRUD))
        return InMemoryJobRepository()

    @singleton
    @provider
    def provide_container_runtime(self) -> ContainerRuntime:
        # Dockerデーモンとの接続を確立
        return DockerClient(
            docker_client=docker.from_env(),
            sandbox_labels=config.SANDBOX_CONTAINER_LABELS
        )

    @singleton
    @provider
    def provide_sandbox_manager_service(self, runtime: ContainerRuntime) -> SandboxManagerService:
        return SandboxManagerService(
            runtime=runtime,
            image=config.SANDBOX_IMAGE,
            name_prefix=config.SANDBOX_NAME_PREFIX,
            container_workspace_path=config.SANDBOX_WORKSPACE_PATH,
            status_poll_delay=config.SANDBOX_STATUS_POLL_DELAY,
            stop_timeout=config.SANDBOX_STOP_TIMEOUT,
            host=config.SANDBOX_HOST,
        )

    @singleton
    @provider
    def provide_project_generator(self) -> ProjectGenerator:
        if config.GENERATOR_BACKEND == "llm":
            return LLMProjectGenerator(model_name=config.LLM_MODEL_NAME, base_url=config.LLM_BASE_URL)
        return TemplateProjectGenerator()

    @singleton
    @provider
    def provide_job_service(self, repository: JobRepository, generator: ProjectGenerator,
                            sandbox_manager: SandboxManagerService) -> JobService:
        return JobService(
            repository=repository,
            generator=generator,
            sandbox_manager=sandbox_manager,
            workspaces_dir=config.WORKSPACES_DIR,
            downloads_dir=config.DOWNLOADS_DIR,
            download_url_prefix=config.DOWNLOAD_URL_PREFIX,
            provisioning_delay=config.PROVISIONING_DELAY,
        )

main_injector = Injector([CoreModule()])
