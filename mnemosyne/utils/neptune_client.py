"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.
"""

from functools import wraps
from typing import Any, Dict, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import Cardinality, P

from .config import NeptuneConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class NeptuneError(Exception):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations on connection errors."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except NeptuneError:
            raise
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            else:
                logger.error(f'Error in {func.__name__}: {e}')
                raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def flatten_value_map(value_map: Dict[Any, Any]) -> Dict[str, Any]:
    """Unwrap Gremlin ``value_map`` output into plain properties.

    Vertex properties come back as single-element lists; token keys (T.id,
    T.label) are dropped in favour of the stored ``id`` property.
    """
    flat = {}
    for key, value in value_map.items():
        if not isinstance(key, str):
            continue
        if isinstance(value, list):
            value = value[0] if value else None
        flat[key] = value
    return flat


class NeptuneClient:
    """Amazon Neptune client for memorygram vertices and relationship edges."""

    def __init__(self, config: NeptuneConfig, traversal_source=None):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
            traversal_source: Optional ready traversal source, skips connecting
        """
        self.config = config
        self.connection = None
        self.g = traversal_source
        if self.g is None:
            self._connect()
            logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = Session().region_name or self.config.region or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    # ------------------------------------------------------------------
    # Vertices
    # ------------------------------------------------------------------

    @retry_on_connection_error
    def upsert_vertex(self, label: str, vertex_id: str, properties: Dict[str, Any], created_at: str) -> Dict[str, Any]:
        """
        Create a vertex, or overwrite the properties of an existing one.

        Args:
            label: Vertex label
            vertex_id: Unique vertex identifier (stored as the ``id`` property)
            properties: Properties to set; None values are skipped
            created_at: Creation timestamp, only written when the vertex is new

        Returns:
            The stored vertex properties
        """
        existing = self.g.V().has('id', vertex_id).to_list()
        if existing:
            traversal = self.g.V(existing[0])
            logger.debug(f'Updating vertex: {vertex_id}')
        else:
            traversal = self.g.add_v(label).property('id', vertex_id).property('created_at', created_at)
            logger.debug(f'Creating vertex: {vertex_id}')

        for key, value in properties.items():
            if value is None:
                continue
            traversal = traversal.property(Cardinality.single, key, value)

        return flatten_value_map(traversal.value_map(True).next())

    @retry_on_connection_error
    def get_vertex(self, vertex_id: str) -> Optional[Dict[str, Any]]:
        """
        Get a vertex's properties by id.

        Returns:
            Vertex properties, or None if no vertex has this id
        """
        results = self.g.V().has('id', vertex_id).value_map(True).to_list()
        if not results:
            return None
        return flatten_value_map(results[0])

    @retry_on_connection_error
    def vertex_exists(self, vertex_id: str) -> bool:
        return self.g.V().has('id', vertex_id).limit(1).count().next() > 0

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def _project_edges(self, traversal) -> List[Dict[str, Any]]:
        rows = traversal.project('properties', 'from_id', 'to_id', 'label')\
            .by(__.value_map())\
            .by(__.out_v().values('id'))\
            .by(__.in_v().values('id'))\
            .by(__.label())\
            .to_list()

        edges = []
        for row in rows:
            edge = flatten_value_map(row.get('properties', {}))
            edge['from_id'] = row.get('from_id')
            edge['to_id'] = row.get('to_id')
            edge['label'] = row.get('label')
            edges.append(edge)
        return edges

    @retry_on_connection_error
    def create_edge(self, edge_id: str, from_id: str, to_id: str, label: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create a directed edge between two existing vertices.

        Args:
            edge_id: Unique edge identifier
            from_id: Source vertex id
            to_id: Target vertex id
            label: Edge label (relationship type)
            properties: Edge properties; None values are skipped

        Returns:
            The stored edge

        Raises:
            NeptuneError: If either endpoint is missing
        """
        from_vertices = self.g.V().has('id', from_id).to_list()
        to_vertices = self.g.V().has('id', to_id).to_list()
        if not from_vertices or not to_vertices:
            raise NeptuneError(f'Cannot create edge {edge_id}: endpoint vertex missing')

        traversal = self.g.V(from_vertices[0]).add_e(label).to(to_vertices[0]).property('id', edge_id)
        for key, value in properties.items():
            if value is not None:
                traversal = traversal.property(key, value)
        traversal.iterate()

        logger.debug(f'Created {label} edge: {from_id} -> {to_id}')
        return self._project_edges(self.g.E().has('id', edge_id))[0]

    @retry_on_connection_error
    def get_edge(self, edge_id: str) -> Optional[Dict[str, Any]]:
        edges = self._project_edges(self.g.E().has('id', edge_id))
        return edges[0] if edges else None

    @retry_on_connection_error
    def update_edge(self, edge_id: str, properties: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Overwrite properties of an existing edge.

        Returns:
            The updated edge, or None if no edge has this id
        """
        if not self.g.E().has('id', edge_id).to_list():
            return None

        traversal = self.g.E().has('id', edge_id)
        for key, value in properties.items():
            if value is not None:
                traversal = traversal.property(key, value)
        traversal.iterate()

        return self.get_edge(edge_id)

    @retry_on_connection_error
    def get_edges_by_vertex(self, vertex_id: str, include_incoming: bool = True, include_outgoing: bool = True) -> List[Dict[str, Any]]:
        """
        Get edges touching a vertex.

        Args:
            vertex_id: Vertex id
            include_incoming: Include edges pointing at the vertex
            include_outgoing: Include edges leaving the vertex

        Returns:
            List of edges
        """
        if include_incoming and include_outgoing:
            step = __.both_e()
        elif include_incoming:
            step = __.in_e()
        elif include_outgoing:
            step = __.out_e()
        else:
            return []

        return self._project_edges(self.g.V().has('id', vertex_id).flat_map(step).dedup())

    @retry_on_connection_error
    def get_edges_by_label(self, label: str) -> List[Dict[str, Any]]:
        return self._project_edges(self.g.E().has_label(label))

    @retry_on_connection_error
    def find_edges(self,
                   from_id: Optional[str] = None,
                   to_id: Optional[str] = None,
                   label: Optional[str] = None,
                   min_weight: Optional[float] = None,
                   max_weight: Optional[float] = None,
                   is_active: Optional[bool] = None) -> List[Dict[str, Any]]:
        """
        Find edges matching every given filter.

        Returns:
            List of matching edges
        """
        traversal = self.g.V().has('id', from_id).out_e() if from_id else self.g.E()
        if label:
            traversal = traversal.has_label(label)
        if to_id:
            traversal = traversal.where(__.in_v().has('id', to_id))
        if min_weight is not None:
            traversal = traversal.has('weight', P.gte(min_weight))
        if max_weight is not None:
            traversal = traversal.has('weight', P.lte(max_weight))
        if is_active is not None:
            traversal = traversal.has('is_active', is_active)

        return self._project_edges(traversal)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @retry_on_connection_error
    def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy
        """
        self.g.V().limit(1).count().next()
        return True
