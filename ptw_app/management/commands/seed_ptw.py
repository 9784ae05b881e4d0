import random
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone
from faker import Faker
from tqdm import tqdm

from ptw_app.choices import Role, PermitType, RiskLevel, Event
from ptw_app.events import NullPublisher
from ptw_app.exceptions import PermitError
from ptw_app.models import User, Location, Contractor
from ptw_app.services import PermitService
from ptw_app.workflow import Actor, mandatory_checklist

DEMO_USERS = [
    ('admin@ptw.local', 'Admin User', Role.ADMIN),
    ('approver@ptw.local', 'Safety Officer', Role.APPROVER),
    ('requester@ptw.local', 'Site Supervisor', Role.REQUESTER),
]

HAZARDS = [
    'Basınçlı Sıvı yada Gaz', 'Zehirli Madde', 'Elektrik Çarpması', 'Düşme Tehlikesi',
    'Sıcak Madde', 'Alev Alıcı Madde', 'Yangın,parlama,patlama', 'Radyasyon',
    'Açık Alev', 'Takılma,kayma', 'Yüksek Gerilim', 'Yüksek Ses',
]
PRECAUTIONS = [
    'Havalandırma', 'Harici Aydınlatma', 'Gözlemci Bulundurulması', 'Yangın Söndürücü',
    'İşbaşı Toplantısı', 'Yanıcı Maddelerin Uzaklaştırılması', 'İzolasyon', 'Bariyer Kullanılması',
]
PPE = [
    'Göz Koruyucusu', 'Kulak Koruyucusu', 'Baret', 'Eldiven', 'Reflektif Yelek',
    'İş Ayakkabısı', 'Paraşüt Tip Emniyet Kemeri', 'Kaynakçı Başlığı',
]
PERSONNEL_ROLES = ['Worker', 'Supervisor', 'Watchman', 'Rigger', 'Electrician']


class Command(BaseCommand):
    help = "Seeds demo users, locations, contractors and permits"

    def add_arguments(self, parser):
        parser.add_argument("--permits", type=int, default=25)
        parser.add_argument("--seed", type=int, default=None)

    def handle(self, *args, **opts):
        fake = Faker()
        if opts["seed"] is not None:
            Faker.seed(opts["seed"])
            random.seed(opts["seed"])

        users = {}
        for email, name, role in DEMO_USERS:
            users[role], _ = User.objects.get_or_create(email=email, defaults={'full_name': name, 'role': role})

        locations = [
            Location.objects.get_or_create(name=name, defaults={'address': fake.address(), 'site_manager': fake.name()})[0]
            for name in ('Berth 1', 'Berth 2', 'Tank Farm', 'Workshop', 'Warehouse A')
        ]
        contractors = [
            Contractor.objects.get_or_create(name=fake.company(), defaults={
                'company': fake.company(), 'contact_person': fake.name(), 'email': fake.company_email(),
                'phone': fake.phone_number()[:50], 'certification_number': fake.bothify('CERT-####'),
            })[0]
            for _ in range(4)
        ]

        # seeding should not spam dashboard subscribers
        service = PermitService(publisher=NullPublisher())
        requester = Actor.from_user(users[Role.REQUESTER])
        approver = Actor.from_user(users[Role.APPROVER])
        now = timezone.now()
        created = 0

        for _ in tqdm(range(opts["permits"]), desc="Seeding permits"):
            ptw_type = random.choice(PermitType.values)
            valid_from = now + timedelta(days=random.randint(-5, 10), hours=random.randint(0, 12))
            data = {
                'ptw_type': ptw_type,
                'risk_level': random.choice(RiskLevel.values),
                'description': fake.sentence(nb_words=10),
                'work_entity': fake.company(),
                'work_area': fake.street_name(),
                'location': random.choice(locations).pk,
                'contractor': random.choice(contractors).pk,
                'emergency_contact': fake.phone_number()[:100],
                'valid_from': valid_from,
                'valid_until': valid_from + timedelta(hours=random.choice([4, 8, 12, 24])),
                'personnel_list': [{'name': fake.name(), 'role': random.choice(PERSONNEL_ROLES)}
                                   for _ in range(random.randint(1, 5))],
                'selected_hazards': random.sample(HAZARDS, 3),
                'selected_precautions': random.sample(PRECAUTIONS, 3),
                'selected_ppe': random.sample(PPE, 4),
                'safety_checklist': mandatory_checklist(ptw_type),
                'hazards_identified': True,
                'controls_required': True,
                'ppe_identified': True,
                'equipment_identified': True,
            }
            try:
                permit = service.create(data, requester)
                created += 1
                # walk a share of the permits further along the lifecycle
                if random.random() < 0.7:
                    permit = service.transition(permit.pk, Event.SUBMIT, requester)
                if permit.status == 'pending' and random.random() < 0.6:
                    service.transition(permit.pk, Event.APPROVE, approver)
            except PermitError as exc:
                self.stderr.write(f"Skipped permit: {exc.message}")

        self.stdout.write(self.style.SUCCESS(
            f"Seeded {len(users)} users, {len(locations)} locations, {len(contractors)} contractors, {created} permits"
        ))
