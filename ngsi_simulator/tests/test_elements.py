"""
Tests for template expansion and schedule grouping.
"""

from ngsi_simulator.elements import expand, expand_all, group_by_schedule
from ngsi_simulator.model import Attribute, Device, ElementType, Entity, SimulationConfig


class TestExpand:
    def test_named_entity_is_copied(self) -> None:
        entity = Entity(entity_type="Type1", entity_name="Room1", active=[Attribute(value=1, name="t")])
        (instance,) = expand(entity)
        assert instance.entity_name == "Room1"
        assert instance is not entity
        assert instance.active[0] is not entity.active[0]

    def test_count_generates_type_indexed_names(self) -> None:
        entity = Entity(entity_type="Type1", count=3, active=[Attribute(value=1, name="t")])
        instances = expand(entity)
        assert [instance.entity_name for instance in instances] == ["Type1:1", "Type1:2", "Type1:3"]
        assert all(instance.count is None for instance in instances)

    def test_instances_are_independent(self) -> None:
        entity = Entity(entity_type="Type1", count=2, active=[Attribute(value=1, name="t")])
        first, second = expand(entity)
        first.active[0].value = 99
        assert second.active[0].value == 1
        assert entity.active[0].value == 1

    def test_device_count(self) -> None:
        device = Device(protocol="UltraLight::HTTP", entity_type="Sensor", api_key="key", count=2)
        instances = expand(device)
        assert [instance.device_id for instance in instances] == ["Sensor:1", "Sensor:2"]
        assert all(instance.api_key == "key" for instance in instances)

    def test_zero_count_yields_nothing(self) -> None:
        assert expand(Entity(entity_type="Type1", count=0)) == []

    def test_expand_all_orders_entities_before_devices(self) -> None:
        config = SimulationConfig(
            entities=[Entity(entity_type="Type1", count=2)],
            devices=[Device(protocol="JSON::MQTT", device_id="dev1")],
        )
        expanded = [(kind, element.identifier) for kind, element in expand_all(config)]
        assert expanded == [
            (ElementType.ENTITY, "Type1:1"),
            (ElementType.ENTITY, "Type1:2"),
            (ElementType.DEVICE, "dev1"),
        ]


class TestGroupBySchedule:
    def test_attribute_schedule_overrides_element(self) -> None:
        fast = Attribute(value=1, name="fast", schedule="*/5 * * * * *")
        slow = Attribute(value=2, name="slow")
        other = Attribute(value=3, name="other")
        entity = Entity(entity_type="T", entity_name="E", schedule="0 * * * * *", active=[fast, slow, other])
        assert group_by_schedule(entity) == {"*/5 * * * * *": [fast], "0 * * * * *": [slow, other]}

    def test_static_only_entity_gets_empty_bucket(self) -> None:
        entity = Entity(
            entity_type="T",
            entity_name="E",
            schedule="once",
            static_attributes=[Attribute(value="x", name="label")],
        )
        assert group_by_schedule(entity) == {"once": []}

    def test_no_attributes_no_groups(self) -> None:
        assert group_by_schedule(Entity(entity_type="T", entity_name="E", schedule="once")) == {}
