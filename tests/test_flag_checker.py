from support_inbox.models.schemas import Customer, Order
from support_inbox.services.flag_checker import NegativeFlagChecker


def test_tag_flags_are_labelled_by_origin():
    checker = NegativeFlagChecker()
    customer = Customer(id="c1", tags=["VIP", "Fraud_Risk"])
    order = Order(id="o1", name="#1001", tags=["chargeback-2023"])

    flags = checker.check(customer=customer, order=order)

    assert flags == ["customer_tag:Fraud_Risk", "order_tag:chargeback-2023"]


def test_one_flag_per_note():
    checker = NegativeFlagChecker()
    order = Order(id="o1", name="#1001", note="Threatened a chargeback, possible fraud")

    assert checker.check(order=order) == ["order_note:chargeback"]


def test_clean_customer_has_no_flags():
    checker = NegativeFlagChecker()
    customer = Customer(id="c1", tags=["vip", "newsletter"], note="Prefers email contact")

    assert checker.check(customer=customer, order=None) == []


def test_keywords_are_injectable():
    checker = NegativeFlagChecker(tag_keywords=["wholesale"], note_keywords=["reseller"])
    customer = Customer(id="c1", tags=["Wholesale-Account", "fraud"], note="Known reseller")

    assert checker.check(customer=customer) == [
        "customer_tag:Wholesale-Account", "customer_note:reseller"
    ]


def test_empty_keyword_lists_disable_flagging():
    checker = NegativeFlagChecker(tag_keywords=[], note_keywords=[])
    customer = Customer(id="c1", tags=["fraud_risk"], note="Opened a chargeback")

    assert checker.check(customer=customer) == []
