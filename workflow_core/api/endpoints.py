"""FastAPI REST and WebSocket endpoints for the workflow core."""

import asyncio
import json
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from ..core.exceptions import (
    ExecutionNotFoundError,
    GraphValidationError,
    RegistryError,
    WorkflowEngineError,
    WorkflowNotFoundError,
    create_error_response,
)
from ..core.execution_engine import ExecutionEngine
from ..core.graph_manager import GraphManager
from ..core.logging import get_logger
from ..models.core import (
    ExecutionEvent,
    ExecutionFilters,
    ExecutionOptions,
    ExecutionStatus,
    WorkflowFilters,
    WorkflowStatus,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_graph_manager: Optional[GraphManager] = None
_execution_engine: Optional[ExecutionEngine] = None


def init_dependencies(graph_manager: GraphManager, execution_engine: ExecutionEngine):
    """Initialize the global dependencies."""
    global _graph_manager, _execution_engine
    _graph_manager = graph_manager
    _execution_engine = execution_engine


def get_graph_manager() -> GraphManager:
    """Dependency to get graph manager."""
    if _graph_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Graph manager not initialized"
        )
    return _graph_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def _http_error(e: WorkflowEngineError) -> HTTPException:
    """Map a core error onto an HTTP status code."""
    if isinstance(e, (WorkflowNotFoundError, ExecutionNotFoundError)):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, (GraphValidationError, RegistryError)):
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    if status_code >= 500:
        logger.error(f"Request failed: {e.message}")
    else:
        logger.warning(f"Request rejected: {e.message}")
    return HTTPException(status_code=status_code, detail=create_error_response(e))


# Request models

class DuplicateWorkflowRequest(BaseModel):
    name: Optional[str] = Field(None, description="Name of the copy")


class ExecuteWorkflowRequest(BaseModel):
    """Request model for starting an execution."""
    input: Dict[str, Any] = Field(default_factory=dict, description="Values merged over variable defaults")
    options: ExecutionOptions = Field(default_factory=ExecutionOptions, description="Per-call overrides")


class CreateTemplateRequest(BaseModel):
    workflow_id: str = Field(..., alias="workflowId", description="Workflow to snapshot")
    name: Optional[str] = None
    description: str = ""
    category: str = "custom"
    tags: Optional[List[str]] = None

    model_config = {"populate_by_name": True}


class ApplyTemplateRequest(BaseModel):
    name: Optional[str] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


# Workflows

@router.post("/workflows", status_code=status.HTTP_201_CREATED, summary="Create a workflow")
async def create_workflow(
    workflow: Dict[str, Any],
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    """
    Create a new workflow.

    The response carries the stored workflow plus the validation findings for
    it; findings never block creation.
    """
    try:
        created = graph_manager.create_workflow(workflow)
        validation = graph_manager.validate_workflow(created)
        logger.info(f"Created workflow '{created.name}' with ID: {created.id}")
        return {"workflow": created.to_json_dict(), "validation": validation.to_json_dict()}
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/workflows", summary="List workflows")
async def list_workflows(
    status_filter: List[WorkflowStatus] = Query([], alias="status"),
    tag: List[str] = Query([]),
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> List[Dict[str, Any]]:
    filters = WorkflowFilters(status=status_filter, tags=tag, search=search, limit=limit, offset=offset)
    return [workflow.to_json_dict() for workflow in graph_manager.list_workflows(filters)]


@router.post("/workflows/import", status_code=status.HTTP_201_CREATED, summary="Import a workflow")
async def import_workflow(
    document: Dict[str, Any],
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.import_workflow(document).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/workflows/{workflow_id}", summary="Get a workflow")
async def get_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.get_workflow(workflow_id).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.put("/workflows/{workflow_id}", summary="Update a workflow")
async def update_workflow(
    workflow_id: str,
    updates: Dict[str, Any],
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.update_workflow(workflow_id, updates).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete("/workflows/{workflow_id}", summary="Delete a workflow")
async def delete_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    if not graph_manager.delete_workflow(workflow_id):
        raise _http_error(WorkflowNotFoundError(f"Workflow '{workflow_id}' not found", resource_id=workflow_id))
    return {"deleted": True, "workflowId": workflow_id}


@router.post("/workflows/{workflow_id}/duplicate", status_code=status.HTTP_201_CREATED,
             summary="Duplicate a workflow")
async def duplicate_workflow(
    workflow_id: str,
    request: Optional[DuplicateWorkflowRequest] = None,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        name = request.name if request else None
        return graph_manager.duplicate_workflow(workflow_id, name).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/workflows/{workflow_id}/export", summary="Export a workflow as JSON")
async def export_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Response:
    try:
        document = graph_manager.export_workflow(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return Response(content=document, media_type="application/json")


@router.post("/workflows/{workflow_id}/validate", summary="Validate a workflow")
async def validate_workflow(
    workflow_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.validate_workflow(workflow_id).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


# Nodes and connections

@router.post("/workflows/{workflow_id}/nodes", status_code=status.HTTP_201_CREATED, summary="Add a node")
async def add_node(
    workflow_id: str,
    node: Dict[str, Any],
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.add_node(workflow_id, node).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.put("/workflows/{workflow_id}/nodes/{node_id}", summary="Update a node")
async def update_node(
    workflow_id: str,
    node_id: str,
    updates: Dict[str, Any],
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.update_node(workflow_id, node_id, updates).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete("/workflows/{workflow_id}/nodes/{node_id}", summary="Delete a node and its connections")
async def delete_node(
    workflow_id: str,
    node_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        deleted = graph_manager.delete_node(workflow_id, node_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    if not deleted:
        raise _http_error(WorkflowNotFoundError(f"Node '{node_id}' not found", resource_id=node_id))
    return {"deleted": True, "nodeId": node_id}


@router.post("/workflows/{workflow_id}/connections", status_code=status.HTTP_201_CREATED,
             summary="Add a connection")
async def add_connection(
    workflow_id: str,
    connection: Dict[str, Any],
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.add_connection(workflow_id, connection).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.put("/workflows/{workflow_id}/connections/{connection_id}", summary="Update a connection")
async def update_connection(
    workflow_id: str,
    connection_id: str,
    updates: Dict[str, Any],
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.update_connection(workflow_id, connection_id, updates).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete("/workflows/{workflow_id}/connections/{connection_id}", summary="Delete a connection")
async def delete_connection(
    workflow_id: str,
    connection_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        deleted = graph_manager.delete_connection(workflow_id, connection_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    if not deleted:
        raise _http_error(WorkflowNotFoundError(f"Connection '{connection_id}' not found", resource_id=connection_id))
    return {"deleted": True, "connectionId": connection_id}


# Executions

@router.post("/workflows/{workflow_id}/execute", status_code=status.HTTP_202_ACCEPTED,
             summary="Execute a workflow")
async def execute_workflow(
    workflow_id: str,
    request: Optional[ExecuteWorkflowRequest] = None,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    """
    Start an execution and return its id without waiting for it to finish.

    Raises:
        HTTPException: 404 for an unknown workflow, 400 if validation is
            enforced and the workflow is invalid
    """
    request = request or ExecuteWorkflowRequest()
    try:
        execution_id = execution_engine.execute_workflow(
            workflow_id, request.input, request.options, trigger={"type": "api"}
        )
    except WorkflowEngineError as e:
        raise _http_error(e)
    logger.info(f"Started workflow execution via API: execution_id={execution_id}")
    return {"executionId": execution_id, "status": ExecutionStatus.PENDING.value}


@router.get("/executions", summary="Query execution history")
async def get_execution_history(
    workflow_id: Optional[str] = Query(None, alias="workflowId"),
    status_filter: List[ExecutionStatus] = Query([], alias="status"),
    trigger: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[Dict[str, Any]]:
    filters = ExecutionFilters(status=status_filter, trigger=trigger, limit=limit, offset=offset)
    try:
        records = execution_engine.get_execution_history(workflow_id, filters)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return [record.to_json_dict() for record in records]


@router.delete("/executions", summary="Clear execution history")
async def clear_execution_history(
    workflow_id: Optional[str] = Query(None, alias="workflowId"),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    try:
        removed = execution_engine.clear_execution_history(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return {"removed": removed}


@router.get("/executions/{execution_id}", summary="Get execution status")
async def get_execution_status(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    try:
        context = execution_engine.get_execution_status(execution_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    with context.lock:
        return context.to_json_dict()


@router.post("/executions/{execution_id}/stop", summary="Cancel an execution")
async def stop_execution(
    execution_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    try:
        stopped = execution_engine.stop_execution(execution_id)
        current = execution_engine.get_execution_status(execution_id).status
    except WorkflowEngineError as e:
        raise _http_error(e)
    return {"executionId": execution_id, "stopped": stopped, "status": current.value}


@router.get("/statistics", summary="Execution statistics and queue status")
async def get_statistics(
    workflow_id: Optional[str] = Query(None, alias="workflowId"),
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> Dict[str, Any]:
    try:
        statistics = execution_engine.get_execution_statistics(workflow_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return {**statistics, "queue": execution_engine.get_execution_queue_status()}


@router.get("/actions", summary="List registered actions")
async def list_actions(
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> List[Dict[str, Any]]:
    return execution_engine.actions.list()


# Templates

@router.post("/templates", status_code=status.HTTP_201_CREATED, summary="Create a template from a workflow")
async def create_template(
    request: CreateTemplateRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        template = graph_manager.create_template(
            request.workflow_id, request.name, request.description, request.category, request.tags
        )
    except WorkflowEngineError as e:
        raise _http_error(e)
    return template.to_json_dict()


@router.get("/templates", summary="List templates")
async def list_templates(
    category: Optional[str] = None,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> List[Dict[str, Any]]:
    return [template.to_json_dict() for template in graph_manager.list_templates(category)]


@router.get("/templates/{template_id}", summary="Get a template")
async def get_template(
    template_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    try:
        return graph_manager.get_template(template_id).to_json_dict()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/templates/{template_id}/apply", status_code=status.HTTP_201_CREATED,
             summary="Create a workflow from a template")
async def apply_template(
    template_id: str,
    request: Optional[ApplyTemplateRequest] = None,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> Dict[str, Any]:
    request = request or ApplyTemplateRequest()
    try:
        workflow = graph_manager.apply_template(template_id, request.name, request.variables)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return workflow.to_json_dict()


# WebSocket endpoint for real-time monitoring

@router.websocket("/ws/executions")
async def execution_events(websocket: WebSocket, execution_id: Optional[str] = Query(None, alias="executionId")):
    """
    Stream execution events as JSON.

    Pass ``executionId`` to receive the events of a single execution only.
    Clients may send ``{"action": "ping"}`` and receive ``{"type": "pong"}``.
    """
    if _execution_engine is None:
        await websocket.close(code=1011, reason="Execution engine not initialized")
        return

    loop = asyncio.get_running_loop()
    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    def forward(event: ExecutionEvent) -> None:
        loop.call_soon_threadsafe(queue.put_nowait, event.to_json_dict())

    subscription_id = _execution_engine.events.subscribe(forward, execution_id)
    await websocket.accept()
    logger.info(f"WebSocket client connected: subscription={subscription_id}")

    async def send_events() -> None:
        while True:
            await websocket.send_json(await queue.get())

    async def receive_messages() -> None:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON message format"})
                continue
            if isinstance(message, dict) and message.get("action") == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json({"type": "error", "message": "Unknown action"})

    tasks = [asyncio.ensure_future(send_events()), asyncio.ensure_future(receive_messages())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error(f"WebSocket error for subscription {subscription_id}: {error}")
    finally:
        for task in tasks:
            task.cancel()
        _execution_engine.events.unsubscribe(subscription_id)
        logger.info(f"WebSocket client disconnected: subscription={subscription_id}")
