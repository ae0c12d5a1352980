#!/usr/bin/env python
# scripts/reset_db.py

import asyncio
import os
from pathlib import Path

from flowrun.domain.graph_model import GraphDefinition
from flowrun.persistence.database import AsyncSessionLocal, create_schema
from flowrun.persistence.repositories.workflow_repository import WorkflowRepository
from flowrun.service.workflow_service import WorkflowService

DEMO_GRAPH = {
    "jobs": [
        {"id": "fetch", "name": "fetch", "adaptor": "@openfn/language-http@latest", "body": "get('/orders')"},
        {"id": "load", "name": "load", "adaptor": "@openfn/language-postgresql@latest", "body": "insert('orders')"},
    ],
    "triggers": [{"id": "webhook", "type": "webhook"}],
    "edges": [
        {"source": "webhook", "target": "fetch"},
        {"source": "fetch", "target": "load", "condition_type": "on_job_success"},
    ],
}


async def seed_demo():
    async with AsyncSessionLocal() as session:
        service = WorkflowService(WorkflowRepository(session))
        project = await service.create_project("demo", project_id="demo")
        workflow = await service.save_workflow(
            project_id=project.id,
            workflow_id="demo-orders",
            name="orders",
            definition=GraphDefinition.model_validate(DEMO_GRAPH),
        )
        print(f"已创建项目 {project.id} 和工作流 {workflow.id}")


async def reset_db():
    """重置数据库：删除现有数据库，创建新表并写入演示数据"""
    print("重置数据库...")

    db_file = Path(__file__).parent.parent / "flowrun.db"
    if db_file.exists():
        print(f"删除现有数据库文件: {db_file}")
        os.remove(db_file)

    print("使用 SQLAlchemy 创建表...")
    await create_schema()
    print("表创建完成！")

    await seed_demo()
    print("数据库重置完成！")


if __name__ == "__main__":
    asyncio.run(reset_db())
