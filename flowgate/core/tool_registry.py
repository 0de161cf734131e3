"""Tool registry resolving tool names to callables for tool and agent nodes."""

import asyncio
import importlib
import inspect
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..storage.models import ToolRegistryModel
from .exceptions import ConfigurationError, ToolExecutionError
from .logging import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of tools callable as ``tool(input) -> output``.

    Tools may be plain functions or coroutine functions. When a session
    factory is given, registrations are also recorded in the database so a
    restarted process can re-import tools by module path.
    """

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """Initialize the tool registry.

        Args:
            session_factory: Optional database session factory for persisting registrations
        """
        self._session_factory = session_factory
        self._memory_cache: Dict[str, Callable] = {}
        self._descriptions: Dict[str, str] = {}
        self._schemas: Dict[str, Dict[str, Any]] = {}

    def register_tool(
        self,
        name: str,
        function: Callable,
        description: str = "",
        input_schema: Optional[Dict[str, Any]] = None,
        replace: bool = False
    ) -> None:
        """Register a callable as a reusable tool.

        Args:
            name: Unique identifier for the tool
            function: Callable taking the resolved node input
            description: Optional description shown to agents
            input_schema: Optional JSON schema of the input, shown to agents
            replace: Overwrite an existing registration instead of failing

        Raises:
            ConfigurationError: If the name is taken or the function is invalid
        """
        if not name or not name.strip():
            raise ConfigurationError("Tool name cannot be empty")

        name = name.strip()

        if not callable(function):
            raise ConfigurationError(f"Tool '{name}' must be callable", config_key=name)

        try:
            sig = inspect.signature(function)
            if len(sig.parameters) == 0:
                logger.warning(f"Tool '{name}' takes no parameters - it won't receive node input")
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Cannot inspect signature of tool '{name}': {e}", config_key=name)

        if name in self._memory_cache and not replace:
            raise ConfigurationError(f"Tool '{name}' is already registered", config_key=name)

        self._memory_cache[name] = function
        self._descriptions[name] = description.strip() if description else ""
        self._schemas[name] = input_schema or {"type": "object", "properties": {}}

        if self._session_factory is not None:
            self._persist_registration(name, function)

        logger.info(f"Registered tool '{name}'")

    def _persist_registration(self, name: str, function: Callable) -> None:
        function_module = getattr(function, "__module__", None)
        function_name = getattr(function, "__qualname__", None)
        if not function_module or not function_name or "<" in function_name:
            # Closures and lambdas cannot be re-imported; keep them in memory only
            return

        session = self._session_factory()
        try:
            model = session.get(ToolRegistryModel, name)
            if model is None:
                model = ToolRegistryModel(name=name)
                session.add(model)
            model.description = self._descriptions[name]
            model.function_module = function_module
            model.function_name = function_name
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to persist registration of tool '{name}': {e}")
        finally:
            session.close()

    def resolve(self, name: str) -> Callable:
        """Retrieve a registered tool by name.

        Raises:
            ConfigurationError: If the tool is not registered or cannot be imported
        """
        if not name or not name.strip():
            raise ConfigurationError("Tool name cannot be empty")

        name = name.strip()

        if name in self._memory_cache:
            return self._memory_cache[name]

        if self._session_factory is None:
            raise ConfigurationError(f"Tool '{name}' is not registered", config_key=name)

        session = self._session_factory()
        try:
            model = session.get(ToolRegistryModel, name)
            if model is None:
                raise ConfigurationError(f"Tool '{name}' is not registered", config_key=name)
            function_module, function_name = model.function_module, model.function_name
            description = model.description or ""
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Failed to look up tool '{name}': {e}", config_key=name)
        finally:
            session.close()

        try:
            target: Any = importlib.import_module(function_module)
            for attribute in function_name.split("."):
                target = getattr(target, attribute)
        except (ImportError, AttributeError) as e:
            raise ConfigurationError(f"Cannot import tool '{name}' from {function_module}: {e}", config_key=name)

        if not callable(target):
            raise ConfigurationError(f"Tool '{name}' is not callable", config_key=name)

        self._memory_cache[name] = target
        self._descriptions.setdefault(name, description)
        self._schemas.setdefault(name, {"type": "object", "properties": {}})
        logger.debug(f"Loaded tool '{name}' from {function_module}.{function_name}")
        return target

    async def invoke(self, name: str, tool_input: Any) -> Any:
        """Call a tool without blocking the event loop.

        Raises:
            ConfigurationError: If the tool does not exist
            ToolExecutionError: If the tool raises
        """
        function = self.resolve(name)
        try:
            if inspect.iscoroutinefunction(function):
                return await function(tool_input)
            result = await asyncio.to_thread(function, tool_input)
            if inspect.isawaitable(result):
                result = await result
            return result
        except ToolExecutionError:
            raise
        except Exception as e:
            raise ToolExecutionError(f"Tool '{name}' failed: {e}", tool_name=name) from e

    def unregister_tool(self, name: str) -> bool:
        """Remove a tool from the registry.

        Returns:
            True if tool was removed, False if tool was not found
        """
        name = (name or "").strip()
        removed = self._memory_cache.pop(name, None) is not None
        self._descriptions.pop(name, None)
        self._schemas.pop(name, None)

        if self._session_factory is not None:
            session = self._session_factory()
            try:
                model = session.get(ToolRegistryModel, name)
                if model is not None:
                    session.delete(model)
                    session.commit()
                    removed = True
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"Failed to unregister tool '{name}': {e}")
            finally:
                session.close()

        if removed:
            logger.info(f"Unregistered tool '{name}'")
        return removed

    def tool_exists(self, name: str) -> bool:
        try:
            self.resolve(name)
            return True
        except ConfigurationError:
            return False

    def list_tools(self) -> Dict[str, str]:
        """Registered tool names mapped to their descriptions."""
        return dict(self._descriptions)

    def describe_tools(self, names: List[str]) -> List[Dict[str, Any]]:
        """Tool specs offered to a language model for the given tool names.

        Raises:
            ConfigurationError: If any of the tools does not exist
        """
        specs = []
        for name in names:
            self.resolve(name)
            specs.append({
                "name": name,
                "description": self._descriptions.get(name) or name,
                "input_schema": self._schemas.get(name) or {"type": "object", "properties": {}},
            })
        return specs
