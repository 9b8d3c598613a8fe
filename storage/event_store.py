"""DynamoDB storage for canonical event records."""
import hashlib
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Union

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.models import Event, EventStatus, derive_status_tags

logger = logging.getLogger(__name__)

MANUAL_SOURCE = 'Manual'


class EventStoreError(Exception):
    """Base error for event storage operations."""


class DuplicateKeyError(EventStoreError):
    """An event with the same (source, source_url) already exists."""

    def __init__(self, source: str, source_url: str):
        super().__init__(f"Event already exists for ({source}, {source_url})")
        self.source = source
        self.source_url = source_url


class StaleWriteError(EventStoreError):
    """The stored record was scraped more recently than the write."""


def generate_event_id(source: str, source_url: str) -> str:
    """
    Generate the identifier for an event.

    Events with a full dedup key get a SHA256 hash of source + source_url,
    so the table key enforces one record per key. Others get a random id.

    Args:
        source: Event source name
        source_url: Event page URL

    Returns:
        Event ID
    """
    if source and source_url:
        composite = f"{source}|{source_url}"
        return hashlib.sha256(composite.encode('utf-8')).hexdigest()
    return uuid.uuid4().hex


def to_timestamp(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def from_timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException'


class DynamoDBEventStore:
    """Storage collaborator backed by a DynamoDB table keyed on event_id."""

    MAX_IMPORT_ATTEMPTS = 3

    def __init__(self, table_name: str):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb')
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBEventStore for table: {table_name}")

    def find_by_key(self, source: str, source_url: str) -> Optional[Event]:
        """
        Look up an event by its dedup key.

        Args:
            source: Event source name
            source_url: Event page URL

        Returns:
            Stored Event or None
        """
        if not source or not source_url:
            return None
        return self.get_event(generate_event_id(source, source_url))

    def get_event(self, event_id: str) -> Optional[Event]:
        """Fetch a single event by id."""
        try:
            response = self.table.get_item(
                Key={'event_id': event_id},
                ConsistentRead=True
            )
        except ClientError as e:
            logger.error(f"Error reading event {event_id}: {e}")
            raise

        item = response.get('Item')
        return self._item_to_event(item) if item else None

    def insert(self, event: Event) -> Event:
        """
        Insert a new event.

        Args:
            event: Event to store; event_id is assigned when missing

        Returns:
            The stored Event

        Raises:
            DuplicateKeyError: If an event with the same dedup key exists
        """
        if not event.event_id:
            event.event_id = generate_event_id(event.source, event.source_url)

        try:
            self.table.put_item(
                Item=self._event_to_item(event),
                ConditionExpression=Attr('event_id').not_exists()
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise DuplicateKeyError(event.source, event.source_url) from e
            logger.error(f"Error inserting event {event.event_id}: {e}")
            raise

        logger.debug(f"Inserted event {event.event_id}")
        return event

    def update(self, event: Event) -> Event:
        """
        Replace a stored event with a new version.

        The whole item is written in one request, so status, status_tags
        and last_scraped always change together.

        Args:
            event: Event with event_id set

        Returns:
            The stored Event

        Raises:
            StaleWriteError: If the stored last_scraped is newer than the event's
        """
        if not event.event_id:
            raise ValueError("Cannot update an event without event_id")

        condition = Attr('event_id').exists()
        last_scraped = to_timestamp(event.last_scraped)
        if last_scraped is not None:
            condition = condition & (
                Attr('last_scraped').not_exists() | Attr('last_scraped').lte(last_scraped)
            )

        try:
            self.table.put_item(
                Item=self._event_to_item(event),
                ConditionExpression=condition
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                raise StaleWriteError(
                    f"Event {event.event_id} is missing or has a newer version"
                ) from e
            logger.error(f"Error updating event {event.event_id}: {e}")
            raise

        logger.debug(f"Updated event {event.event_id}")
        return event

    def batch_update_where(
        self,
        older_than: datetime,
        patch: Union[Dict, Callable[[Event], Dict]]
    ) -> int:
        """
        Apply a patch to every active event last scraped before a cutoff.

        Matches are found with a filtered scan; each write is conditioned on
        the same predicate so a record refreshed in the meantime is skipped.

        Args:
            older_than: Cutoff for last_scraped
            patch: Attribute values to set, keyed by item attribute name, or
                a callable building them from the matched Event

        Returns:
            Count of updated events
        """
        cutoff = to_timestamp(older_than)
        inactive = EventStatus.INACTIVE.value
        predicate = Attr('last_scraped').lt(cutoff) & Attr('status').ne(inactive)

        matches = [
            event for event in map(self._item_to_event, self._scan(FilterExpression=predicate))
            if event
        ]

        updated_count = 0
        for event in matches:
            attributes = patch(event) if callable(patch) else patch

            names = {'#ls': 'last_scraped', '#st': 'status'}
            values = {':cutoff': cutoff, ':inactive': inactive}
            assignments = []
            for index, (attribute, value) in enumerate(attributes.items()):
                names[f'#a{index}'] = attribute
                values[f':v{index}'] = value
                assignments.append(f'#a{index} = :v{index}')

            try:
                self.table.update_item(
                    Key={'event_id': event.event_id},
                    UpdateExpression='SET ' + ', '.join(assignments),
                    ConditionExpression='#ls < :cutoff AND #st <> :inactive',
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values
                )
                updated_count += 1
            except ClientError as e:
                if _is_conditional_failure(e):
                    logger.debug(f"Event {event.event_id} changed since scan, skipping")
                    continue
                logger.error(f"Error updating event {event.event_id}: {e}")
                raise

        logger.info(f"Batch update touched {updated_count} of {len(matches)} matching events")
        return updated_count

    def get_all_events(self) -> Dict[str, Event]:
        """
        Retrieve all events using a Scan operation.

        Returns:
            Dictionary mapping event_id to Event objects
        """
        logger.info("Scanning DynamoDB table for all events")
        events = {}
        for item in self._scan():
            event = self._item_to_event(item)
            if event:
                events[event.event_id] = event

        logger.info(f"Retrieved {len(events)} events from DynamoDB")
        return events

    def list_active_events(self, city: str, limit: int = 200) -> List[Event]:
        """
        List events for a city that are not inactive, soonest first.

        Args:
            city: City to list
            limit: Maximum number of events

        Returns:
            Events ordered by start_date, undated events last
        """
        predicate = Attr('city').eq(city) & Attr('status').ne(EventStatus.INACTIVE.value)
        events = [
            event for event in map(self._item_to_event, self._scan(FilterExpression=predicate))
            if event
        ]
        events.sort(key=lambda e: (e.start_date is None, to_timestamp(e.start_date) or 0))
        return events[:limit]

    def search_events(
        self,
        city: str,
        keyword: str = '',
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 500
    ) -> List[Event]:
        """
        Search all events for a city, including inactive ones.

        Args:
            city: City to search
            keyword: Case-insensitive text matched against title, venue and description
            date_from: Earliest start_date
            date_to: Latest start_date
            limit: Maximum number of events

        Returns:
            Matching events, most recently scraped first
        """
        needle = keyword.lower()
        results = []
        for item in self._scan(FilterExpression=Attr('city').eq(city)):
            event = self._item_to_event(item)
            if not event:
                continue
            if needle and not any(
                needle in (value or '').lower()
                for value in (event.title, event.venue_name, event.description)
            ):
                continue
            if date_from or date_to:
                if event.start_date is None:
                    continue
                start = to_timestamp(event.start_date)
                if date_from and start < to_timestamp(date_from):
                    continue
                if date_to and start > to_timestamp(date_to):
                    continue
            results.append(event)

        results.sort(key=lambda e: to_timestamp(e.last_scraped) or 0, reverse=True)
        return results[:limit]

    def create_manual_event(
        self,
        title: str,
        city: str,
        now: Optional[datetime] = None,
        source: str = MANUAL_SOURCE,
        **fields
    ) -> Event:
        """
        Store an event entered by hand.

        Args:
            title: Event title (required)
            city: City for the event
            now: Creation time, defaults to the current time
            source: Source name, defaults to 'Manual'
            **fields: Any other Event attributes

        Returns:
            The stored Event

        Raises:
            ValueError: If title is empty
            DuplicateKeyError: If source and source_url collide with a stored event
        """
        if not title or not title.strip():
            raise ValueError("Title is required")

        now = now or datetime.now(timezone.utc)
        event = Event(
            title=title.strip(),
            city=city,
            source=source or MANUAL_SOURCE,
            status=EventStatus.NEW,
            status_tags=derive_status_tags(EventStatus.NEW, None),
            last_scraped=now,
            **fields
        )
        return self.insert(event)

    def mark_imported(
        self,
        event_id: str,
        imported_by: str,
        notes: str = '',
        now: Optional[datetime] = None
    ) -> Optional[Event]:
        """
        Record that an event was imported into the platform.

        Only import metadata and status_tags are written. The write is
        conditioned on the status read for deriving the tags, so a
        concurrent reconciliation is never overwritten; on a conflict the
        record is re-read and the write retried.

        Args:
            event_id: Event to mark
            imported_by: Identifier of the importing user
            notes: Import notes
            now: Import time, defaults to the current time

        Returns:
            The updated Event, or None if it does not exist

        Raises:
            StaleWriteError: If the status kept changing across all attempts
        """
        imported_at = now or datetime.now(timezone.utc)

        for attempt in range(self.MAX_IMPORT_ATTEMPTS):
            event = self.get_event(event_id)
            if event is None:
                return None

            status = EventStatus(event.status).value
            try:
                response = self.table.update_item(
                    Key={'event_id': event_id},
                    UpdateExpression=(
                        'SET imported_at = :imported_at, imported_by = :imported_by, '
                        'import_notes = :notes, status_tags = :tags'
                    ),
                    ConditionExpression='#st = :status',
                    ExpressionAttributeNames={'#st': 'status'},
                    ExpressionAttributeValues={
                        ':imported_at': to_timestamp(imported_at),
                        ':imported_by': imported_by,
                        ':notes': notes or '',
                        ':tags': derive_status_tags(event.status, imported_at),
                        ':status': status
                    },
                    ReturnValues='ALL_NEW'
                )
            except ClientError as e:
                if _is_conditional_failure(e):
                    logger.info(
                        f"Event {event_id} changed while importing, retrying "
                        f"(attempt {attempt + 1}/{self.MAX_IMPORT_ATTEMPTS})"
                    )
                    continue
                logger.error(f"Error marking event {event_id} as imported: {e}")
                raise

            logger.info(f"Marked event {event_id} as imported by {imported_by}")
            return self._item_to_event(response['Attributes'])

        raise StaleWriteError(f"Event {event_id} kept changing while importing")

    def _scan(self, **kwargs) -> List[dict]:
        try:
            response = self.table.scan(**kwargs)
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'],
                    **kwargs
                )
                items.extend(response.get('Items', []))

            return items

        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise

    def _item_to_event(self, item: dict) -> Optional[Event]:
        """
        Convert DynamoDB item to Event object.

        Args:
            item: DynamoDB item dictionary

        Returns:
            Event object or None if conversion fails
        """
        try:
            return Event(
                event_id=item['event_id'],
                title=item['title'],
                source=item.get('source', ''),
                source_url=item.get('source_url', ''),
                date_text=item.get('date_text', ''),
                start_date=_from_iso(item.get('start_date')),
                end_date=_from_iso(item.get('end_date')),
                venue_name=item.get('venue_name', ''),
                venue_address=item.get('venue_address', ''),
                city=item.get('city', ''),
                description=item.get('description', ''),
                category=list(item.get('category', [])),
                image_url=item.get('image_url', ''),
                last_scraped=from_timestamp(item.get('last_scraped')),
                status=EventStatus(item.get('status', EventStatus.NEW.value)),
                status_tags=list(item.get('status_tags', [])),
                imported_at=from_timestamp(item.get('imported_at')),
                imported_by=item.get('imported_by'),
                import_notes=item.get('import_notes')
            )
        except (KeyError, ValueError) as e:
            logger.warning(f"Failed to convert item to Event: {e}")
            return None

    def _event_to_item(self, event: Event) -> dict:
        """
        Convert Event object to DynamoDB item.

        Args:
            event: Event object

        Returns:
            DynamoDB item dictionary
        """
        item = {
            'event_id': event.event_id,
            'title': event.title,
            'source': event.source,
            'source_url': event.source_url,
            'date_text': event.date_text,
            'venue_name': event.venue_name,
            'venue_address': event.venue_address,
            'city': event.city,
            'description': event.description,
            'category': list(event.category),
            'image_url': event.image_url,
            'status': EventStatus(event.status).value,
            'status_tags': list(event.status_tags),
        }

        # Add optional fields if present
        if event.start_date:
            item['start_date'] = _to_iso(event.start_date)
        if event.end_date:
            item['end_date'] = _to_iso(event.end_date)
        if event.last_scraped:
            item['last_scraped'] = to_timestamp(event.last_scraped)
        if event.imported_at:
            item['imported_at'] = to_timestamp(event.imported_at)
        if event.imported_by:
            item['imported_by'] = event.imported_by
        if event.import_notes is not None:
            item['import_notes'] = event.import_notes

        return item
