# eventsource

Building blocks for event-sourced applications. The package rebuilds an
aggregate's current state by replaying the events recorded for it.
Commands run against that state and produce new events, which are then
saved.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Concepts

- **Events** (`eventsource.events`) describe changes that have already
  happened. Subclass the `Model` dataclass, which gives each event an
  `id`, a `version` and an `at` timestamp. It also provides
  `aggregate_id()`, `event_version()` and `event_at()`. An event class
  may define `event_type()` to choose the name it is stored under.
  Otherwise the class name is used; see `event_type(event)`.
- **Commands** ask for a change. Subclass the `CommandModel` dataclass,
  whose `aggregate_id()` returns its `id`.
- **Aggregates** implement `on(event)` to fold events into state. They
  raise if an event cannot be applied. To take commands they also
  implement `apply(command)`, which returns a list of new events.
- **Serializers** (`eventsource.serializer`) convert events to and from
  `Record`s. `JSONSerializer` stores each event as
  `{"t": <type name>, "d": <fields>}` and writes datetimes in ISO format.
  Bind every event class (or instance) you want to read back, either in
  the constructor or with `bind()`. `marshal_all(*events)` returns a
  `History`.
- **Stores** (`eventsource.store`) keep records for each aggregate.
  `save(aggregate_id, *records)` adds records.
  `load(aggregate_id, from_version=0, to_version=0)` reads them back; a
  `to_version` of 0 means there is no upper bound. `MemoryStore` is the
  default and keeps records sorted by version. `History` is a list of
  records that sorts by version by default.

## Example

```python
from dataclasses import dataclass
from eventsource.events import Model, CommandModel
from eventsource.repository import Repository
from eventsource.serializer import JSONSerializer


@dataclass
class OrderCreated(Model):
    pass


@dataclass
class CreateOrder(CommandModel):
    pass


class Order:
    def __init__(self):
        self.id = ""
        self.version = 0
        self.state = ""

    def on(self, event):
        if isinstance(event, OrderCreated):
            self.state = "created"
        else:
            raise ValueError(f"unable to handle event, {event!r}")
        self.id = event.aggregate_id()
        self.version = event.event_version()

    def apply(self, command):
        return [OrderCreated(id=command.aggregate_id(), version=self.version + 1)]


repo = Repository(Order, serializer=JSONSerializer(OrderCreated))
version = repo.apply(CreateOrder(id="order-1"))
order = repo.load("order-1")
print(order.state, version)  # created 1
```

`Repository(prototype, store=None, serializer=None, observers=(), debug=None)`
accepts the following arguments:

- `prototype` is the aggregate class or an instance of it. New aggregates
  are made by calling the class with no arguments.
- `observers` are callables. Each one is called with every event that
  `apply` produces, after the events are saved.
- `debug` is a text stream. When it is set, the repository writes
  timestamped diagnostic lines to it.

The repository has these methods:

- `save(*events)` serializes the events and stores them under the first
  event's aggregate id.
- `load(aggregate_id)` rebuilds the aggregate from its events.
- `apply(command)` loads the aggregate, or starts a new one if none is
  found. It runs the command, saves the resulting events, notifies the
  observers and returns the latest version.
- `dispatch(command)` does the same as `apply` but returns nothing.

## Errors

Failures are raised as `eventsource.errors.EventSourceError`, with a
`code`, a `message` and an optional `cause`. The codes are
`INVALID_ENCODING`, `UNBOUND_EVENT_TYPE`, `AGGREGATE_NOT_FOUND` and
`UNHANDLED_EVENT`. `is_not_found(err)` and `err_has_code(err, code)`
check for a code anywhere along the chain of causes.

## Other stores

- `eventsource.dynamodbstore.DynamoDBStore(table_name, api=None,
  region="us-east-1", events_per_item=100, debug=None)` keeps events in
  DynamoDB items. Each item holds one partition of `events_per_item`
  versions. `api` is a low-level DynamoDB client that you provide. It
  must offer `update_item` and `query`. Saving records that are already
  stored, identically, succeeds. Conflicting records raise
  `ConditionalCheckFailedError`.
  - `make_create_table_input(...)` returns a CreateTable request.
    `make_update_item_input` and `make_query_input` return the requests
    the store sends.
  - `changes(record)` extracts the newly added records from a DynamoDB
    stream record.
  - `table_name(arn)` extracts the table name from a stream's event
    source ARN.
- `eventsource.mysqlstore.MySQLStore(table_name, accessor)` and
  `eventsource.pgstore.PostgresStore(table_name, accessor)` keep one row
  per event.
  - The `accessor` has `open()`, which returns a DB-API connection using
    the `%s` parameter style, and `close(db)`. The stores never commit.
  - Both stores also offer `read(starting_offset, record_count)`, which
    returns `StreamRecord`s from the raw event stream.
  - `create_if_not_exists(db, table_name)` creates the table and its
    unique `(aggregate_id, version)` index.

## Unique resources

`eventsource.singleton.Registry(table_name, api)` reserves unique
resources, such as the e-mail address `user@example.com`, in a DynamoDB
table. `api` is a client with `get_item`, `put_item` and `delete_item`.
A `Resource` has a `type`, an `id` and an `owner`. The registry has these
methods:

- `reserve(resource, duration)` reserves the resource. A zero duration
  means forever, and the same owner may reserve the same resource again.
- `is_available(resource)` raises `ReservationError` if the resource
  belongs to someone else or the reservation has expired.
- `release(resource)` frees the resource.
- `wrap(dispatcher)` and `wrap_repository(repository)` return functions
  that reserve the resource named by a `Reservable` command before
  running it. A resource held by another owner raises an error for which
  `is_already_reserved(err)` is true.

`make_create_table_input(table_name, read_capacity, write_capacity)`
returns the table's CreateTable request.

## What this package does not do

- It has no command-line tool. It does not create or delete DynamoDB
  tables itself: it only builds the CreateTable request, which you send
  with your own client.
- It does not create AWS clients or database connections. You supply
  them.
- It has no ready-made given/when/then helper for testing aggregates.
  Test an aggregate by calling its `on` and `apply` methods directly, or
  through a `Repository` backed by a `MemoryStore`.